"""rbac/ -- Roles, permissions and the authorization decision.

Layer rule: rbac/ imports only from core/ plus stdlib and third-party
libraries. It does NOT import from auth/.
"""
