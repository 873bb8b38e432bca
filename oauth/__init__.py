"""
oauth — credential authorization and token refresh.

  • Authorize-URL generation with single-use CSRF state tokens
  • Callback handling (code → token exchange) per provider
  • On-demand refresh of expiring access tokens
"""
