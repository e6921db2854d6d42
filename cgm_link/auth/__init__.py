"""Dexcom OAuth2, token lifecycle and API client."""
