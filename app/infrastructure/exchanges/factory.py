"""
Exchange Factory

Creates and caches one exchange client per (credential_ref, settle).
Credentials are resolved from process configuration by reference, so
nothing secret is ever stored alongside a position.
"""

from typing import Callable, Dict, Optional, Tuple

from app.infrastructure.exchanges.base import ExchangeClient
from app.infrastructure.exchanges.gateio import GateioFuturesClient
from app.shared.exceptions import CredentialNotFoundError
from app.utils.logger import get_logger

logger = get_logger(__name__)

ClientBuilder = Callable[[str, str, Dict[str, str]], ExchangeClient]


class ExchangeFactory:
    """
    Exchange client factory.

    Usage:
        factory = ExchangeFactory(
            credentials={"default": {"api_key": "...", "api_secret": "..."}},
            base_url=settings.GATEIO_BASE_URL,
        )
        client = factory.get_client("default", "usdt")
        ...
        await factory.close_all()
    """

    def __init__(
        self,
        credentials: Dict[str, Dict[str, str]],
        base_url: Optional[str] = None,
        timeout_seconds: float = 10,
        builder: Optional[ClientBuilder] = None,
    ):
        """
        Initialize factory.

        Args:
            credentials: Credential sets keyed by reference name
            base_url: Exchange REST base URL override
            timeout_seconds: Per-request timeout
            builder: Alternative client constructor (tests, other venues)
        """
        self._credentials = dict(credentials)
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._builder = builder or self._build_gateio
        self._clients: Dict[Tuple[str, str], ExchangeClient] = {}

        logger.info(
            f"ExchangeFactory initialized with {len(self._credentials)} credential set(s)"
        )

    def _build_gateio(
        self,
        credential_ref: str,
        settle: str,
        credentials: Dict[str, str],
    ) -> ExchangeClient:
        return GateioFuturesClient(
            credential_ref=credential_ref,
            settle=settle,
            credentials=credentials,
            base_url=self._base_url,
            timeout_seconds=self._timeout_seconds,
        )

    def has_credentials(self, credential_ref: str) -> bool:
        return credential_ref in self._credentials

    def get_client(self, credential_ref: str, settle: str) -> ExchangeClient:
        """
        Get the cached client for a credential set and settle currency.

        Raises:
            CredentialNotFoundError: No credentials configured for the reference
        """
        key = (credential_ref, settle.lower())
        client = self._clients.get(key)
        if client is not None:
            return client

        credentials = self._credentials.get(credential_ref)
        if not credentials:
            raise CredentialNotFoundError(credential_ref)

        client = self._builder(credential_ref, key[1], credentials)
        self._clients[key] = client
        logger.debug(f"Created exchange client for {credential_ref}:{key[1]}")
        return client

    async def close_all(self) -> None:
        """Close every cached client."""
        for key, client in list(self._clients.items()):
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Failed to close exchange client {key}: {str(e)}")
        self._clients.clear()
