"""skillsauth: authorization core for the skills marketplace.

Issues and manages device codes for headless CLI login, redirect-based
CLI auth sessions, and long-lived scoped API tokens with rotating
refresh tokens.
"""

__version__ = "0.1.0"
