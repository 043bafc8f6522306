"""core/ -- Kernel: configuration, error taxonomy, storage engine and list queries.

Layer rule: core/ may not import from auth/ or rbac/.
"""
