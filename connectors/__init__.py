"""
connectors — per-provider OAuth2 capabilities.

Each provider (Google family, Spotify, Twitch) is a ``ProviderCapabilities``
record of four operations:
  • authorize_url  — build the consent-screen URL
  • exchange_code  — authorization code → tokens
  • refresh        — refresh token → new access token
  • fetch_profile  — best-effort account label for display naming
"""
