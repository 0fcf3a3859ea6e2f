"""splitroute — split-tunnel bypass routes for hosts on a corporate VPN."""

__version__ = "1.0.0"
