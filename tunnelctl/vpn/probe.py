"""End-to-end connectivity check through the tunnel."""

import asyncio
from typing import Optional

import requests

from ..logging_utility import logger

CHECK_URL = "https://www.google.com/"
PROXIED_TIMEOUT = 3.0
DIRECT_TIMEOUT = 10.0
MAX_RETRIES = 3
RETRY_DELAY = 2.0


class ConnectivityProbe:
    def __init__(self, url: str = CHECK_URL, max_retries: int = MAX_RETRIES,
                 retry_delay: float = RETRY_DELAY):
        self.url = url
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def _request(self, proxies: Optional[dict], timeout: float) -> int:
        with requests.Session() as session:
            session.trust_env = False
            response = session.get(self.url, proxies=proxies, timeout=timeout)
            # Reading the body means the response arrived in full
            _ = response.content
            return response.status_code

    async def verify(self, proxy_host: Optional[str] = None, proxy_port: Optional[int] = None) -> bool:
        """
        Issue an HTTPS GET, optionally through a local SOCKS5 proxy.

        Args:
            proxy_host: SOCKS5 proxy address
            proxy_port: SOCKS5 proxy port

        Returns:
            bool: True once any HTTP response is received, False after all retries fail
        """
        if proxy_host and proxy_port:
            # socks5h resolves the check host on the far side of the tunnel
            proxy_url = f"socks5h://{proxy_host}:{proxy_port}"
            proxies = {"http": proxy_url, "https": proxy_url}
            timeout = PROXIED_TIMEOUT
            logger.info(f"Checking connectivity through {proxy_url}")
        else:
            proxies = None
            timeout = DIRECT_TIMEOUT
            logger.info("Performing direct connectivity check")

        for attempt in range(self.max_retries + 1):
            try:
                status = await asyncio.to_thread(self._request, proxies, timeout)
                logger.info(f"Connectivity check passed with HTTP {status}")
                return True
            except requests.RequestException as e:
                logger.warning(f"Connectivity check request failed: {e}")
            if attempt < self.max_retries:
                logger.info(f"Connectivity check retry {attempt + 1}/{self.max_retries}")
                await asyncio.sleep(self.retry_delay)

        logger.error("Internet connectivity check failed")
        return False
