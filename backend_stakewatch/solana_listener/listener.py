"""
Solana RPC transaction source for the staking reconciliation run.

Responsibilities:
- Page getSignaturesForAddress for each watched address (newest first, `before`
  cursor), stopping at the last signature seen on the previous run (`until`).
- Fetch the full transactions with getTransaction in small concurrent batches,
  pausing between batches so public RPC rate limits are respected.
- Retry every request with exponential backoff; give up on a signature page
  with TransactionFetchError, and skip (with an error log) a single
  transaction that keeps failing.
- Stop starting new requests once the caller's deadline has passed; addresses
  left unfinished keep their cursor.
- Read the staking contract's current token balance for reconciliation.
"""

from __future__ import annotations

import itertools
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence

import httpx

from backend_stakewatch.config.env import mask_rpc_url
from backend_stakewatch.core.exceptions import TransactionFetchError
from backend_stakewatch.solana_listener.models import SignatureInfo
from backend_stakewatch.solana_listener.parser import ui_token_amount
from backend_stakewatch.stakewatch_logging import get_logger
from backend_stakewatch.utils.wallet_utils import short_address

logger = get_logger(__name__)

_request_ids = itertools.count(1)


def _rpc_body(method: str, params: list[Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": next(_request_ids), "method": method, "params": params}


@dataclass
class TransactionPage:
    """
    Raw getTransaction results (oldest first) plus the cursor to resume from.

    cursor maps address -> newest signature seen; passing it back never returns
    a transaction that was already returned for that address.
    """

    transactions: list[dict[str, Any]] = field(default_factory=list)
    cursor: dict[str, str] = field(default_factory=dict)


class TransactionSource(Protocol):
    def fetch_transactions(
        self,
        addresses: Sequence[str],
        cursor: Mapping[str, str] | None = None,
        *,
        deadline: float | None = None,
    ) -> TransactionPage:
        """deadline: time.monotonic() value after which no new requests are started."""
        ...


class RpcTransactionSource:
    """
    JSON-RPC TransactionSource over httpx.

    One httpx.Client is shared by the batch workers (httpx clients are
    thread-safe). Pass `transport` (e.g. httpx.MockTransport) to test without
    a network.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        batch_size: int = 5,
        batch_delay_sec: float = 1.0,
        max_retries: int = 5,
        min_retry_delay_sec: float = 1.0,
        max_retry_delay_sec: float = 30.0,
        request_timeout_sec: float = 30.0,
        signatures_limit_per_request: int = 1000,
        commitment: str = "confirmed",
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if not (1 <= signatures_limit_per_request <= 1000):
            raise ValueError("signatures_limit_per_request must be between 1 and 1000")

        self._rpc_url = rpc_url.rstrip("/")
        self._batch_size = batch_size
        self._batch_delay = batch_delay_sec
        self._max_retries = max_retries
        self._min_retry_delay = min_retry_delay_sec
        self._max_retry_delay = max_retry_delay_sec
        self._timeout = request_timeout_sec
        self._signatures_limit = signatures_limit_per_request
        self._commitment = commitment
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(self._timeout), transport=self._transport)

    def _call(self, client: httpx.Client, method: str, params: list[Any]) -> Any:
        """One JSON-RPC call; raise on transport or RPC error."""
        resp = client.post(self._rpc_url, json=_rpc_body(method, params))
        resp.raise_for_status()
        data = resp.json()
        if "error" in data:
            err = data["error"]
            raise RuntimeError(f"Solana RPC error: {err.get('message', err)} (code={err.get('code')})")
        return data.get("result")

    def _call_with_retry(self, client: httpx.Client, method: str, params: list[Any], *, context: str) -> Any:
        delay = self._min_retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return self._call(client, method, params)
            except (httpx.HTTPError, RuntimeError, ValueError) as e:
                last_error = e
                logger.warning(
                    "rpc_retry",
                    method=method,
                    context=context,
                    attempt=attempt + 1,
                    max_retries=self._max_retries,
                    error=str(e),
                )
                if attempt + 1 < self._max_retries:
                    self._sleep(delay)
                    delay = min(delay * 2, self._max_retry_delay)
        raise TransactionFetchError(f"{method} failed for {context} after {self._max_retries} attempts: {last_error}")

    def fetch_signatures(
        self,
        client: httpx.Client,
        address: str,
        until: str | None = None,
    ) -> list[SignatureInfo]:
        """
        All signatures for address newer than `until`, newest first.

        Raises TransactionFetchError when a page cannot be fetched.
        """
        infos: list[SignatureInfo] = []
        before: str | None = None
        while True:
            opts: dict[str, Any] = {"limit": self._signatures_limit, "commitment": self._commitment}
            if before is not None:
                opts["before"] = before
            if until is not None:
                opts["until"] = until
            raw = self._call_with_retry(
                client, "getSignaturesForAddress", [address, opts], context=short_address(address)
            )
            items = raw if isinstance(raw, list) else []
            for item in items:
                if not isinstance(item, dict) or "signature" not in item:
                    continue
                try:
                    infos.append(SignatureInfo.from_rpc_item(item))
                except (KeyError, TypeError, ValueError) as e:
                    logger.debug("rpc_invalid_signature_item", error=str(e))
            if len(items) < self._signatures_limit:
                break
            before = items[-1].get("signature") if isinstance(items[-1], dict) else None
            if before is None:
                break
        return infos

    def _fetch_one(self, client: httpx.Client, signature: str) -> dict[str, Any] | None:
        params = [
            signature,
            {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": self._commitment},
        ]
        try:
            result = self._call_with_retry(client, "getTransaction", params, context=signature)
        except TransactionFetchError as e:
            logger.error("rpc_transaction_skipped", tx_signature=signature, error=str(e))
            return None
        if not isinstance(result, dict):
            logger.warning("rpc_transaction_missing", tx_signature=signature)
            return None
        return result

    def _expired(self, deadline: float | None) -> bool:
        return deadline is not None and self._clock() >= deadline

    def fetch_transaction_batch(
        self,
        client: httpx.Client,
        signatures: Sequence[str],
        deadline: float | None = None,
    ) -> list[dict[str, Any] | None]:
        """
        getTransaction for each signature, batch_size at a time on worker threads.

        Results keep the input order; None marks a transaction that could not be
        fetched, or was not requested because the deadline had passed.
        """
        results: list[dict[str, Any] | None] = []
        with ThreadPoolExecutor(max_workers=self._batch_size) as pool:
            for start in range(0, len(signatures), self._batch_size):
                if start > 0 and self._batch_delay > 0:
                    self._sleep(self._batch_delay)
                if self._expired(deadline):
                    logger.warning("rpc_deadline_reached", skipped=len(signatures) - start, total=len(signatures))
                    results.extend([None] * (len(signatures) - start))
                    break
                batch = signatures[start : start + self._batch_size]
                results.extend(pool.map(lambda sig: self._fetch_one(client, sig), batch))
                logger.debug(
                    "rpc_batch_fetched",
                    done=min(start + self._batch_size, len(signatures)),
                    total=len(signatures),
                )
        return results

    def fetch_transactions(
        self,
        addresses: Sequence[str],
        cursor: Mapping[str, str] | None = None,
        *,
        deadline: float | None = None,
    ) -> TransactionPage:
        """
        New transactions touching any of addresses since `cursor`, oldest first.

        A signature shared by several addresses is fetched once. Signatures whose
        transaction failed on-chain are not fetched. If any transaction of an
        address could not be fetched, that address keeps its previous cursor so
        the next run retries it.

        deadline: clock value (time.monotonic by default) after which no new
        address or batch is started; addresses not finished keep their cursor.
        """
        previous = dict(cursor or {})
        page = TransactionPage(cursor=dict(previous))
        seen: set[str] = set()
        logger.info("rpc_fetch_started", rpc_url=mask_rpc_url(self._rpc_url), addresses=len(addresses))
        with self._client() as client:
            for address in addresses:
                if self._expired(deadline):
                    logger.warning("rpc_deadline_reached", address=short_address(address))
                    break
                infos = self.fetch_signatures(client, address, until=previous.get(address))
                if not infos:
                    logger.info("rpc_no_new_signatures", address=short_address(address))
                    continue
                wanted = [
                    i.signature for i in reversed(infos) if i.err is None and i.signature not in seen
                ]
                seen.update(wanted)
                fetched = self.fetch_transaction_batch(client, wanted, deadline)
                missing = sum(1 for tx in fetched if tx is None)
                page.transactions.extend(tx for tx in fetched if tx is not None)
                if missing:
                    logger.warning(
                        "rpc_cursor_held",
                        address=short_address(address),
                        missing=missing,
                        fetched=len(fetched) - missing,
                    )
                else:
                    page.cursor[address] = infos[0].signature
                logger.info(
                    "rpc_transactions_fetched",
                    address=short_address(address),
                    signatures=len(infos),
                    transactions=len(fetched) - missing,
                )
        return page

    def get_token_balance(self, owner: str, mint: str) -> float:
        """Sum of owner's token accounts for mint (the contract's actual balance)."""
        with self._client() as client:
            result = self._call_with_retry(
                client,
                "getTokenAccountsByOwner",
                [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self._commitment}],
                context=short_address(owner),
            )
        total = 0.0
        for acc in (result or {}).get("value") or []:
            info = (((acc.get("account") or {}).get("data") or {}).get("parsed") or {}).get("info") or {}
            total += ui_token_amount(info.get("tokenAmount"))
        return total
