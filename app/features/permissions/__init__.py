"""
Permission management feature module.

Implements role-based access control over the organizational directory:
effective permission resolution, access decisions with department/group
scope narrowing, and route-level permission requirements.
"""
