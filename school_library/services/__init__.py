"""School Library - Services Package

This package contains the collaborators of the loan engine:
- HTTP client for the REST backend
- REST storage adapter (envelope handling)
- Notification dispatch hook
"""
