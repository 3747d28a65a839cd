"""
Swap Quotes
===========

Jupiter aggregator integration. The fleet only needs two calls: a quote for
an exact input amount, and the unsigned swap transaction for that quote.
The returned transaction is signed, submitted and confirmed exactly like a
transfer.

API docs: https://dev.jup.ag/docs/swap-api
"""

import base64
import binascii
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from solswarm.errors import QuoteUnavailableError
from solswarm.utils import logger, format_address

JUPITER_API_BASE = "https://lite-api.jup.ag/swap/v1"

# Wrapped SOL mint; Jupiter wraps/unwraps native SOL around it
SOL_MINT = "So11111111111111111111111111111111111111112"


@dataclass(frozen=True)
class Quote:
    """A swap quote for an exact input amount."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    slippage_bps: int
    raw: Dict[str, Any] = field(repr=False, compare=False, default_factory=dict)


class QuoteProvider(ABC):
    """Source of swap quotes and unsigned swap transactions."""

    @abstractmethod
    def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Quote:
        """Quote swapping ``amount`` base units of ``input_mint``."""

    @abstractmethod
    def build_swap_transaction(self, quote: Quote, payer: str) -> bytes:
        """Return the serialized, unsigned swap transaction for ``payer``."""


class _QuoteTransportError(Exception):
    """Retryable network failure talking to the swap API."""


_api_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception_type(_QuoteTransportError),
    reraise=True,
)


class JupiterQuoteProvider(QuoteProvider):
    """Jupiter swap API client."""

    def __init__(
        self,
        base_url: str = JUPITER_API_BASE,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {"Accept": "application/json"}
        if api_key:
            self.headers["x-api-key"] = api_key

    @_api_retry
    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", headers=self.headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise _QuoteTransportError(str(e)) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise _QuoteTransportError(f"HTTP {response.status_code}")
        if response.status_code != 200:
            error_text = response.text[:300] if response.text else "Unknown error"
            raise QuoteUnavailableError(f"Swap API error {response.status_code}: {error_text}")

        try:
            return response.json()
        except ValueError as e:
            raise QuoteUnavailableError("Swap API returned invalid JSON") from e

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            return self._request(method, path, **kwargs)
        except _QuoteTransportError as e:
            raise QuoteUnavailableError(f"Swap API unreachable: {e}") from e

    def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Quote:
        if amount <= 0:
            raise QuoteUnavailableError(f"Cannot quote non-positive amount {amount}")

        data = self._call("GET", "/quote", params={
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        })

        if "outAmount" not in data:
            raise QuoteUnavailableError(f"No route for {format_address(input_mint)} -> {format_address(output_mint)}")

        logger.debug(
            f"Quote {format_address(input_mint)} -> {format_address(output_mint)}: "
            f"{data.get('inAmount')} -> {data.get('outAmount')}"
        )
        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(data.get("inAmount", amount)),
            out_amount=int(data["outAmount"]),
            slippage_bps=int(data.get("slippageBps", slippage_bps)),
            raw=data,
        )

    def build_swap_transaction(self, quote: Quote, payer: str) -> bytes:
        data = self._call("POST", "/swap", json={
            "userPublicKey": payer,
            "quoteResponse": quote.raw,
            "wrapAndUnwrapSol": True,
        })

        encoded = data.get("swapTransaction")
        if not encoded:
            raise QuoteUnavailableError("No transaction data in swap response")
        try:
            return base64.b64decode(encoded, validate=True)
        except (ValueError, binascii.Error) as e:
            raise QuoteUnavailableError("Swap transaction is not valid base64") from e
