"""cgm-link: Dexcom OAuth token lifecycle and glucose polling."""

__version__ = "0.1.0"
