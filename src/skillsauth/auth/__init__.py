"""Authentication and authorization.

Learn: Three ways a caller ends up with credentials:
1. Device flow → typed user code, CLI polls → access/refresh tokens
2. CLI session flow → browser redirect to localhost → code exchange
3. Personal API tokens created from an authenticated session

All of them resolve to one AuthContext {user_id, scopes, auth_method}
that protected routes check scopes against.
"""
