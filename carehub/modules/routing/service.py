"""
Adaptive post-login routing.

The engine walks ``idle -> resolving -> decided -> navigated | suspended``.
It only resolves when the user is authenticated, module data has loaded,
auto-routing is enabled and the user is still sitting on an entry path
(root or dashboard). A decision that finishes after the user moved elsewhere
is dropped.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from carehub.config.access_config import RoleName, is_super_admin, module_path, validate_module_name
from carehub.core.exceptions import ResolutionError
from carehub.modules.grants.schemas import EffectiveModule
from carehub.modules.module_access.service import ModuleAccessResolver
from carehub.modules.preferences.schemas import ModuleProgress, UserPreferences, UserPreferencesUpdate
from carehub.modules.preferences.service import PreferenceStore, default_preferences
from carehub.modules.routing.schemas import RouteDecision, RouteDecisionRule, RoutingState

logger = logging.getLogger(__name__)


class NavigationBoundary(Protocol):
    def current_path(self) -> str:
        ...

    def navigate(self, path: str) -> None:
        ...


class RecordingNavigator:
    """Navigation boundary for HTTP callers: remembers where the client is and where it should go."""

    def __init__(self, current_path: str = "/"):
        self._current_path = current_path
        self.target: Optional[str] = None

    def current_path(self) -> str:
        return self._current_path

    def navigate(self, path: str) -> None:
        self.target = path
        self._current_path = path


class RoutingDecisionEngine:
    def __init__(
        self,
        user_id: str,
        roles: List[RoleName],
        module_resolver: ModuleAccessResolver,
        preference_store: PreferenceStore,
        dashboard_path: str = "/dashboard",
        root_path: str = "/",
    ):
        self.user_id = user_id
        self.roles = list(roles)
        self.module_resolver = module_resolver
        self.preference_store = preference_store
        self.dashboard_path = dashboard_path
        self.root_path = root_path
        self.state = RoutingState.IDLE
        self.modules_loaded = False
        self._modules: List[EffectiveModule] = []
        self._load_error: Optional[ResolutionError] = None
        self._resolving = False

    @property
    def is_super_admin(self) -> bool:
        return is_super_admin(self.roles)

    def _transition(self, state: RoutingState) -> None:
        if state != self.state:
            logger.debug(f"Routing for user {self.user_id}: {self.state.value} -> {state.value}")
        self.state = state

    async def load(self) -> None:
        """Fetch the effective module snapshot. A failure is remembered and turns the next decision into the dashboard fallback."""
        try:
            self._modules = await self.module_resolver.resolve_modules(self.user_id)
            self._load_error = None
        except ResolutionError as e:
            logger.error(f"Module data for user {self.user_id} failed to load: {e}")
            self._modules = []
            self._load_error = e
        self.modules_loaded = True

    def _is_entry_path(self, path: str) -> bool:
        normalized = path.rstrip("/") or "/"
        return normalized in (self.root_path.rstrip("/") or "/", self.dashboard_path.rstrip("/") or "/")

    def _accessible(self, module_name: Optional[str]) -> bool:
        if not module_name:
            return False
        if self.is_super_admin:
            return True
        return any(m.module_name == module_name for m in self._modules)

    async def _load_preferences(self) -> UserPreferences:
        try:
            return await self.preference_store.load(self.user_id, self.roles)
        except Exception as e:
            logger.error(f"Preferences for user {self.user_id} unavailable, using defaults: {e}")
            return default_preferences(self.roles)

    async def _decide(self, preferences: UserPreferences) -> RouteDecision:
        if self._load_error is not None:
            raise self._load_error

        last_active = preferences.last_active_module
        if self.is_super_admin:
            if self._accessible(last_active):
                return RouteDecision(path=module_path(last_active), rule=RouteDecisionRule.SUPER_ADMIN_LAST_ACTIVE)
            return RouteDecision(path=self.dashboard_path, rule=RouteDecisionRule.SUPER_ADMIN_DASHBOARD)

        if last_active and self._accessible(last_active):
            progress = await self.preference_store.get_progress(self.user_id, last_active)
            if progress is not None:
                return RouteDecision(
                    path=progress.last_path or module_path(last_active),
                    rule=RouteDecisionRule.RESUME_PROGRESS,
                )

        if self._accessible(preferences.default_module):
            return RouteDecision(path=module_path(preferences.default_module), rule=RouteDecisionRule.DEFAULT_MODULE)

        if self._modules:
            # Resolver output is sorted by module name.
            return RouteDecision(path=module_path(self._modules[0].module_name), rule=RouteDecisionRule.FIRST_ACCESSIBLE)

        return RouteDecision(path=self.dashboard_path, rule=RouteDecisionRule.DASHBOARD)

    async def best_route_decision(self) -> RouteDecision:
        if not self.modules_loaded:
            await self.load()
        try:
            return await self._decide(await self._load_preferences())
        except Exception as e:
            logger.error(f"Route decision for user {self.user_id} failed, falling back to dashboard: {e}")
            return RouteDecision(path=self.dashboard_path, rule=RouteDecisionRule.ERROR_FALLBACK)

    async def get_best_route(self) -> str:
        return (await self.best_route_decision()).path

    async def perform_routing(self, navigator: NavigationBoundary, authenticated: bool = True) -> Optional[str]:
        """Route the user once if every guard allows it. Returns the path navigated to, or None."""
        if self._resolving:
            logger.debug(f"Routing for user {self.user_id} already in flight; ignoring re-entrant call")
            return None
        if not authenticated or not self.modules_loaded:
            self._transition(RoutingState.SUSPENDED)
            return None

        start_path = navigator.current_path()
        if not self._is_entry_path(start_path):
            logger.debug(f"User {self.user_id} navigated explicitly to {start_path}; auto-routing suppressed")
            self._transition(RoutingState.SUSPENDED)
            return None

        self._resolving = True
        try:
            preferences = await self._load_preferences()
            if not preferences.auto_route:
                self._transition(RoutingState.SUSPENDED)
                return None

            self._transition(RoutingState.RESOLVING)
            try:
                decision = await self._decide(preferences)
                self._transition(RoutingState.DECIDED)
            except Exception as e:
                logger.error(f"Route decision for user {self.user_id} failed, falling back to dashboard: {e}")
                decision = RouteDecision(path=self.dashboard_path, rule=RouteDecisionRule.ERROR_FALLBACK)

            if navigator.current_path() != start_path:
                logger.info(f"Routing for user {self.user_id} superseded by navigation to {navigator.current_path()}")
                self._transition(RoutingState.SUSPENDED)
                return None

            navigator.navigate(decision.path)
            self._transition(RoutingState.NAVIGATED)
            logger.info(f"Routed user {self.user_id} to {decision.path} ({decision.rule.value})")
            return decision.path
        finally:
            self._resolving = False

    async def update_user_preferences(self, partial: Union[UserPreferencesUpdate, Dict[str, Any]]) -> UserPreferences:
        return await self.preference_store.save(self.user_id, partial, self.roles)

    async def update_module_progress(
        self,
        module_id: str,
        path: Optional[str] = None,
        form_snapshot: Optional[Dict[str, Any]] = None,
    ) -> Tuple[UserPreferences, List[ModuleProgress]]:
        """Record a navigation into a module; it becomes the last active module."""
        module_name = validate_module_name(module_id)
        entries = await self.preference_store.record_progress(self.user_id, module_name, path, form_snapshot)
        preferences = await self.preference_store.save(
            self.user_id, {"last_active_module": module_name}, self.roles
        )
        return preferences, entries


EngineFactory = Callable[[], RoutingDecisionEngine]


class RoutingSessionRegistry:
    """
    Thread-safe registry of user_id -> routing engine, so one user's routing runs once at a time.

    Bounded: engines idle for longer than ``idle_ttl_seconds`` are dropped, and
    past ``max_sessions`` the least recently used engine is evicted.
    """

    def __init__(
        self,
        max_sessions: int = 1000,
        idle_ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_sessions = max_sessions
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # Least recently used first.
        self._engines: "OrderedDict[str, Tuple[RoutingDecisionEngine, float]]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._engines)

    def _prune(self, now: float) -> None:
        while self._engines:
            user_id, (_, last_used) = next(iter(self._engines.items()))
            idle = now - last_used >= self.idle_ttl_seconds
            if not idle and len(self._engines) <= self.max_sessions:
                break
            self._engines.popitem(last=False)
            logger.debug(f"Evicted routing session for user {user_id} ({'idle' if idle else 'capacity'})")

    def get_or_create(self, user_id: str, roles: List[RoleName], factory: EngineFactory) -> RoutingDecisionEngine:
        now = self._clock()
        with self._lock:
            self._prune(now)
            entry = self._engines.get(user_id)
            engine = entry[0] if entry is not None else None
            if engine is None or engine.roles != list(roles):
                engine = factory()
                logger.debug(f"Registered routing session for user {user_id}")
            self._engines[user_id] = (engine, now)
            self._engines.move_to_end(user_id)
            self._prune(now)
            return engine

    def get(self, user_id: str) -> Optional[RoutingDecisionEngine]:
        with self._lock:
            self._prune(self._clock())
            entry = self._engines.get(user_id)
            return entry[0] if entry is not None else None

    def drop(self, user_id: str) -> None:
        with self._lock:
            self._engines.pop(user_id, None)
            logger.debug(f"Dropped routing session for user {user_id}")
