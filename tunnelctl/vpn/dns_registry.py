"""Resolver providers the tunnel can push onto the adapter."""

from typing import List, Optional, Sequence

from .models import DNSProvider


DEFAULT_PROVIDERS = (
    DNSProvider(
        id=0,
        name="cloudflare.com",
        ipv4=("1.1.1.1", "1.0.0.1"),
        ipv6=("2606:4700:4700::1111", "2606:4700:4700::1001"),
    ),
    DNSProvider(
        id=1,
        name="google.com",
        ipv4=("8.8.8.8", "8.8.4.4"),
        ipv6=("2001:4860:4860::8888", "2001:4860:4860::8844"),
    ),
    DNSProvider(
        id=2,
        name="quad9.net",
        ipv4=("9.9.9.9", "149.112.112.112"),
        ipv6=("2620:fe::fe", "2620:fe::9"),
    ),
)


class DNSRegistry:
    def __init__(self, providers: Sequence[DNSProvider] = DEFAULT_PROVIDERS, index: int = 0):
        if not providers:
            raise ValueError("At least one DNS provider is required")
        self._providers = tuple(providers)
        self._current = 0
        self.select(index)

    @property
    def providers(self) -> List[DNSProvider]:
        return list(self._providers)

    @property
    def current_index(self) -> int:
        return self._current

    def current(self) -> DNSProvider:
        return self._providers[self._current]

    def get(self, index: int) -> DNSProvider:
        return self._providers[index]

    def select(self, index: Optional[int]) -> DNSProvider:
        """
        Select the current provider.

        Args:
            index: Provider index; out-of-range values clamp to the nearest
                valid index, None keeps the current selection

        Returns:
            The selected DNSProvider
        """
        if index is None:
            return self.current()
        self._current = max(0, min(int(index), len(self._providers) - 1))
        return self.current()
