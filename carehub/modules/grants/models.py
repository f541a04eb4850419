# Supabase tables: roles, permissions, role_permissions, user_roles, user_permissions,
# modules, role_module_assignments, user_module_assignments
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:

roles:
- id: uuid (primary key)
- name: user_role enum (not null, unique) - e.g., "superAdmin", "nurse", "onboardingTeam"
- description: text (nullable)
- created_at: timestamp (default: now())

permissions:
- id: uuid (primary key)
- name: text (not null, unique) - e.g., "patients:read", "permissions:manage"
- description: text (nullable)
- created_at: timestamp (default: now())

role_permissions:
- id: uuid (primary key)
- role_id: uuid (foreign key to roles.id)
- permission_id: uuid (foreign key to permissions.id)
- unique constraint on (role_id, permission_id)

user_roles:
- id: uuid (primary key)
- user_id: uuid (foreign key to auth.users.id)
- role_id: uuid (foreign key to roles.id)
- assigned_by: uuid (nullable)
- created_at: timestamp (default: now())

user_permissions (direct grants):
- id: uuid (primary key)
- user_id: uuid
- permission_id: uuid (foreign key to permissions.id)
- granted_by: uuid (nullable)
- granted_at: timestamp (default: now())
- expires_at: timestamp (nullable) - grant stops being effective after this instant
- is_active: boolean (default: true) - revocation sets false

modules:
- id: uuid (primary key)
- name: text (not null, unique, lower-case slug) - e.g., "patients", "reports"
- description: text (nullable)
- is_active: boolean (default: true) - soft delete
- created_at, updated_at: timestamp

role_module_assignments:
- id: uuid (primary key)
- role_id: uuid (foreign key to roles.id)
- module_id: uuid (foreign key to modules.id)
- assigned_by: uuid (nullable)
- assigned_at: timestamp
- is_active: boolean (default: true)

user_module_assignments:
- id: uuid (primary key)
- user_id: uuid
- module_id: uuid (foreign key to modules.id)
- assigned_by: uuid (nullable)
- assigned_at: timestamp
- expires_at: timestamp (nullable)
- is_active: boolean (default: true)

RPC:
- user_has_permission(check_user_id uuid, permission_name text, facility_id uuid default null) returns boolean
"""
