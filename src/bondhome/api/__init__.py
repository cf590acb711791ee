"""REST client for the bridge's local HTTP API."""

from bondhome.api.client import BondApiClient, BondApiError, Device

__all__ = ["BondApiClient", "BondApiError", "Device"]
