"""
Authentication for the tutoring API.

Two independent schemes:
- admin portal: signed `admin_session` cookie issued after an allowlisted
  email/password sign-in.
- everyone else: hosted-auth (Supabase) session cookies, resolved and refreshed
  by the request gate.
"""
