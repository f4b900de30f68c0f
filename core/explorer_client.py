#!/usr/bin/env python3
"""
Explorer clients for verified contract source.

Each client exposes a single coroutine, fetch_one(chain_id, address), that
returns the explorer's raw envelope {status, message, result}. Interpreting
that envelope is the batch fetcher's job.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36'
)


class ExplorerClient(ABC):
    """Abstract base class for explorer clients."""

    name = "explorer"

    def __init__(self, timeout: float = 15.0, user_agent: str = DEFAULT_USER_AGENT):
        self.timeout = timeout
        self.user_agent = user_agent
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'User-Agent': self.user_agent,
                    'Accept': 'application/json, text/plain, */*',
                },
            )
        return self.session

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        session = self._ensure_session()
        async with session.get(url, params=params) as response:
            if response.status != 200:
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=f"HTTP {response.status} from {self.name}",
                )
            data = await response.json(content_type=None)

        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response shape from {self.name}: {type(data).__name__}")
        return data

    @abstractmethod
    async def fetch_one(self, chain_id: str, address: str) -> Dict[str, Any]:
        """Fetch the raw source envelope for one contract."""
        pass


class BlockscanClient(ExplorerClient):
    """Keyless client for the Blockscan source API used by the editor integration."""

    name = "blockscan"
    BASE_URL = "https://vscode.blockscan.com/srcapi"

    async def fetch_one(self, chain_id: str, address: str) -> Dict[str, Any]:
        url = f"{self.BASE_URL}/{chain_id}/{address}"
        logger.debug(f"GET {url}")
        return await self._get_json(url)


class EtherscanClient(ExplorerClient):
    """Client for the Etherscan v2 multichain getsourcecode endpoint."""

    name = "etherscan"

    def __init__(self, api_key: str = "", base_url: str = "https://api.etherscan.io/v2/api", **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.base_url = base_url

    async def fetch_one(self, chain_id: str, address: str) -> Dict[str, Any]:
        params = {
            'chainid': chain_id,
            'module': 'contract',
            'action': 'getsourcecode',
            'address': address,
            'apikey': self.api_key or '',
        }
        logger.debug(f"GET {self.base_url} chainid={chain_id} address={address}")
        return await self._get_json(self.base_url, params=params)


def create_explorer_client(kind: str, api_key: str = "", base_url: Optional[str] = None,
                           timeout: float = 15.0, user_agent: str = DEFAULT_USER_AGENT) -> ExplorerClient:
    """Build the client named by the configuration ('blockscan' or 'etherscan')."""
    kind = (kind or 'blockscan').lower()
    if kind == 'etherscan':
        kwargs: Dict[str, Any] = {'api_key': api_key, 'timeout': timeout, 'user_agent': user_agent}
        if base_url:
            kwargs['base_url'] = base_url
        return EtherscanClient(**kwargs)
    if kind == 'blockscan':
        return BlockscanClient(timeout=timeout, user_agent=user_agent)
    raise ValueError(f"Unknown explorer: {kind}")
