import hashlib
import logging
from supabase import Client
from carehub.core.cache import TTLCache
from carehub.modules.auth.schemas import LoginRequest
from fastapi import HTTPException
from typing import Dict, Any

logger = logging.getLogger(__name__)


class AuthService:
    def __init__(self, supabase: Client, user_cache: TTLCache):
        self.supabase = supabase
        self.user_cache = user_cache

    def login(self, login_data: LoginRequest) -> Dict[str, Any]:
        """Authenticate user using Supabase Auth. Returns access token and user identity."""
        try:
            auth_response = self.supabase.auth.sign_in_with_password({
                "email": login_data.email,
                "password": login_data.password
            })

            if not auth_response.user or not auth_response.session:
                raise HTTPException(status_code=401, detail="Invalid credentials")

            return {
                "access_token": auth_response.session.access_token,
                "user_id": auth_response.user.id,
                "email": auth_response.user.email or login_data.email,
            }
        except HTTPException:
            raise
        except Exception as e:
            error_message = str(e)
            if "invalid" in error_message.lower() or "credentials" in error_message.lower():
                raise HTTPException(status_code=401, detail="Invalid email or password")
            logger.error(f"Login failed: {error_message}")
            raise HTTPException(status_code=500, detail="Login failed")

    def get_current_user(self, token: str) -> Dict[str, Any]:
        """Get current user details from Supabase Auth token. Uses short TTL cache to reduce auth API calls."""
        cache_key = (hashlib.sha256(token.encode()).hexdigest(), "user")
        cached = self.user_cache.get(cache_key)
        if cached is not None:
            return cached
        try:
            user_response = self.supabase.auth.get_user(jwt=token)
            if not user_response or not user_response.user:
                raise HTTPException(status_code=401, detail="Invalid or expired token")
            user = user_response.user
            user_data = {
                "id": user.id,
                "email": user.email,
                "user_metadata": user.user_metadata or {},
                "app_metadata": user.app_metadata or {},
            }
            self.user_cache.set(cache_key, user_data)
            return user_data
        except HTTPException:
            raise
        except Exception as e:
            error_msg = str(e)
            if "JWT" in error_msg or "expired" in error_msg.lower() or "invalid" in error_msg.lower():
                raise HTTPException(status_code=401, detail="Invalid or expired token")
            raise HTTPException(status_code=401, detail="Authentication failed")

    def logout(self, token: str) -> bool:
        """Logout user using Supabase Auth and forget the cached token."""
        self.user_cache.invalidate_user(hashlib.sha256(token.encode()).hexdigest())
        try:
            self.supabase.auth.sign_out()
            return True
        except Exception as e:
            logger.warning(f"Supabase sign_out failed: {e}")
            return False
