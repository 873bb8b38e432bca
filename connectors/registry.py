"""
ConnectorRegistry — provider id → ProviderCapabilities dispatch table.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from connectors.base import ProviderCapabilities
from connectors.google import GOOGLE
from connectors.spotify import SPOTIFY
from connectors.twitch import TWITCH

logger = logging.getLogger(__name__)

# ── All known providers — add new ones here ──────────────────────────────

_ALL_PROVIDERS: List[ProviderCapabilities] = [
    GOOGLE,
    SPOTIFY,
    TWITCH,
]


class ConnectorRegistry:
    """Lookup of OAuth2 capabilities by provider id."""

    def __init__(self, providers: Optional[Iterable[ProviderCapabilities]] = None):
        self._providers: Dict[str, ProviderCapabilities] = {}
        for caps in _ALL_PROVIDERS if providers is None else providers:
            self.register(caps)

    def register(self, caps: ProviderCapabilities) -> None:
        for provider_id in caps.provider_ids:
            self._providers[provider_id] = caps
        logger.debug("Provider registered: %s (%s)", caps.display_name, ", ".join(caps.provider_ids))

    def get(self, provider: str) -> Optional[ProviderCapabilities]:
        return self._providers.get(provider)

    def supports(self, provider: str) -> bool:
        return provider in self._providers

    def list_providers(self) -> List[Dict[str, str]]:
        """Return info about all supported provider ids."""
        return [
            {
                "provider": provider_id,
                "display_name": caps.display_name,
                "icon": caps.icon,
            }
            for provider_id, caps in self._providers.items()
        ]
