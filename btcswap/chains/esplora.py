"""
Esplora HTTP provider for btcswap.

Talks to any Esplora-compatible API (mempool.space, blockstream.info, a
self-hosted electrs). Only the handful of endpoints a swap leg needs:

    GET  /address/{address}/utxo
    GET  /address/{address}/txs
    GET  /tx/{txid}
    GET  /blocks/tip/height
    POST /tx
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import SwapConfig
from ..core import Utxo
from ..errors import (
    MalformedResponseError,
    ProviderError,
    ValidationError,
    rejection_from_message,
)
from ..htlc.script import decode_pushes, extract_secret
from ..htlc.signer import PrivateKeySigner
from ..htlc.tx import Transaction
from .provider import Provider, select_utxos

log = logging.getLogger(__name__)


class EsploraProvider(Provider):
    """Provider backed by an Esplora REST API."""

    def __init__(self, signer: PrivateKeySigner, config: SwapConfig = None,
                 client: Optional[httpx.Client] = None):
        self.config = config or SwapConfig()
        super().__init__(
            signer,
            network=self.config.network,
            min_fee=self.config.min_fee,
            max_fee_retries=self.config.max_fee_retries,
        )
        self.base_url = self.config.esplora_url.rstrip("/")
        self._client = client or httpx.Client(timeout=self.config.http_timeout)

    def close(self):
        self._client.close()

    # =========================================================================
    # HTTP
    # =========================================================================

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"Esplora request failed: {method} {path}: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderError(
                f"Esplora {method} {path} -> {response.status_code}: {response.text}"
            )
        return response

    def _get_json(self, path: str) -> Any:
        return self._decode(path, self._request("GET", path))

    def _decode(self, path: str, response: httpx.Response) -> Any:
        if response.status_code != 200:
            raise ProviderError(
                f"Esplora GET {path} -> {response.status_code}: {response.text}",
                retryable=False,
            )
        try:
            return response.json()
        except ValueError:
            raise MalformedResponseError(f"Esplora GET {path}: invalid JSON")

    def get_block_height(self) -> int:
        response = self._request("GET", "/blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError:
            raise MalformedResponseError(f"Esplora tip height: {response.text!r}")

    def _confirmations(self, status: Dict, tip: Optional[int]) -> int:
        if not status.get("confirmed") or tip is None:
            return 0
        return tip - status["block_height"] + 1

    def _address_txs(self, address: str) -> List[Dict]:
        txs = self._get_json(f"/address/{address}/txs")
        if not isinstance(txs, list):
            raise MalformedResponseError(f"Esplora txs for {address}: expected a list")
        return txs

    # =========================================================================
    # Provider
    # =========================================================================

    def get_unspent(self, address: str, min_value: Optional[int] = None) -> List[Utxo]:
        data = self._get_json(f"/address/{address}/utxo")
        if not isinstance(data, list):
            raise MalformedResponseError(f"Esplora utxos for {address}: expected a list")

        tip = self.get_block_height() if any(u.get("status", {}).get("confirmed") for u in data) else None
        try:
            utxos = [
                Utxo(
                    tx_id=u["txid"],
                    vout=u["vout"],
                    value=u["value"],
                    confirmations=self._confirmations(u.get("status", {}), tip),
                )
                for u in data
            ]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Esplora utxo entry missing {e}")

        return select_utxos(utxos, min_value)

    def get_balance(self, address: str) -> int:
        return sum(u.value for u in self.get_unspent(address))

    def funding_transactions(self, address: str, confirmations: int) -> Optional[str]:
        """Txid paying address from elsewhere, with enough confirmations."""
        txs = self._address_txs(address)
        tip = None
        for tx in txs:
            try:
                pays_address = any(o.get("scriptpubkey_address") == address for o in tx["vout"])
                spends_address = any(
                    (i.get("prevout") or {}).get("scriptpubkey_address") == address
                    for i in tx["vin"]
                )
            except (KeyError, TypeError) as e:
                raise MalformedResponseError(f"Esplora tx entry missing {e}")
            if not pays_address or spends_address:
                continue

            status = tx.get("status", {})
            if confirmations > 0:
                if not status.get("confirmed"):
                    continue
                if tip is None:
                    tip = self.get_block_height()
                if self._confirmations(status, tip) < confirmations:
                    continue
            return tx["txid"]
        return None

    def get_secret(self, address: str) -> Optional[str]:
        """Secret revealed by a redeem spending from address, hex."""
        for tx in self._address_txs(address):
            for vin in tx.get("vin", []):
                prevout = vin.get("prevout") or {}
                if prevout.get("scriptpubkey_address") != address:
                    continue
                secret = self._secret_from_input(vin)
                if secret is not None:
                    return secret.hex()
        return None

    def _secret_from_input(self, vin: Dict) -> Optional[bytes]:
        witness = vin.get("witness")
        try:
            if witness:
                stack = [bytes.fromhex(item) for item in witness]
            elif vin.get("scriptsig"):
                stack = decode_pushes(bytes.fromhex(vin["scriptsig"]))
            else:
                return None
        except (ValueError, ValidationError):
            log.debug(f"Unparseable spend of {vin.get('txid')}:{vin.get('vout')}")
            return None
        return extract_secret(stack)

    def get_transaction(self, tx_id: str) -> Optional[Dict]:
        path = f"/tx/{tx_id}"
        response = self._request("GET", path)
        # 404 for unknown ids, 400 for malformed ones
        if response.status_code in (400, 404):
            return None
        tx = self._decode(path, response)
        if not isinstance(tx, dict):
            raise MalformedResponseError(f"Esplora tx {tx_id}: expected an object")
        return tx

    def broadcast(self, tx: Transaction) -> str:
        raw = tx.to_hex()
        response = self._request("POST", "/tx", content=raw)
        if response.status_code != 200:
            error = rejection_from_message(response.text)
            log.error(f"Broadcast rejected ({error.reason.value}): {response.text}")
            raise error
        tx_id = response.text.strip()
        log.info(f"Broadcast {tx_id}")
        return tx_id
