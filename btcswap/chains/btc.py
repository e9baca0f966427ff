"""
Bitcoin Core provider for btcswap.

Drives a local node through bitcoin-cli. UTXO lookups use scantxoutset, so
no wallet or address index is needed on the node. Spends of an HTLC address
are recognised by the script they reveal (its hash is the address), so a
redeem is found in the mempool or in blocks even when the funding output
was never seen unspent.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass

from ..config import SwapConfig
from ..core import Utxo, btc_to_sats
from ..errors import MalformedResponseError, ProviderError, ValidationError, rejection_from_message
from ..htlc.address import p2sh_address, p2wsh_address
from ..htlc.script import decode_pushes, extract_secret
from ..htlc.signer import PrivateKeySigner
from ..htlc.tx import Transaction
from .provider import Provider, select_utxos

log = logging.getLogger(__name__)

# bitcoin-cli: "No such mempool or blockchain transaction"
RPC_INVALID_ADDRESS_OR_KEY = "error code: -5"


@dataclass
class BTCConfig:
    """Bitcoin node configuration."""
    network: str = "testnet"        # mainnet, testnet, signet, regtest
    rpc_user: str = ""
    rpc_password: str = ""
    cli_path: Optional[Path] = None  # Path to bitcoin-cli
    datadir: str = ""               # -datadir for bitcoin-cli (cookie auth)
    timeout: int = 30               # seconds per call


@dataclass
class WatchedAddress:
    """What has been learned about one HTLC address across polls."""
    tx_id: Optional[str] = None     # funding outpoint, once known
    vout: int = 0
    height: Optional[int] = None    # block the funding was mined in
    next_height: int = 0            # next block to search for the spend
    spent: bool = False
    secret: Optional[str] = None    # hex, set when the spend was a redeem


class BitcoinCoreProvider(Provider):
    """
    Provider backed by bitcoin-cli.

    scantxoutset only sees the UTXO set, so funding by someone else is
    reported once it has at least one confirmation. Funding sent through
    this provider is tracked from the moment it is broadcast.
    """

    def __init__(self, signer: PrivateKeySigner, node: BTCConfig = None,
                 config: SwapConfig = None):
        self.config = config or SwapConfig()
        super().__init__(
            signer,
            network=self.config.network,
            min_fee=self.config.min_fee,
            max_fee_retries=self.config.max_fee_retries,
        )
        self.node = node or BTCConfig(network=self.network)
        self.cli_path = self.node.cli_path or self._find_cli()

        self._watched: Dict[str, WatchedAddress] = {}

    def _find_cli(self) -> Optional[Path]:
        """Find bitcoin-cli binary."""
        paths = [
            Path.home() / "bitcoin" / "bin" / "bitcoin-cli",
            Path("/usr/local/bin/bitcoin-cli"),
            Path("/usr/bin/bitcoin-cli"),
        ]
        for p in paths:
            if p.exists():
                return p
        return None

    def _get_network_flag(self) -> str:
        flags = {
            "mainnet": "",
            "testnet": "-testnet",
            "signet": "-signet",
            "regtest": "-regtest",
        }
        return flags.get(self.node.network, "-testnet")

    def _build_cmd(self, method: str, *args) -> List[str]:
        if not self.cli_path:
            raise ProviderError("bitcoin-cli not found", retryable=False)

        cmd = [str(self.cli_path)]

        net_flag = self._get_network_flag()
        if net_flag:
            cmd.append(net_flag)

        if self.node.datadir:
            cmd.append(f"-datadir={self.node.datadir}")
        if self.node.rpc_user:
            cmd.append("-rpcuser=" + self.node.rpc_user)
        if self.node.rpc_password:
            cmd.append("-rpcpassword=" + self.node.rpc_password)

        cmd.append(method)
        # JSON booleans (true/false not True/False)
        cmd.extend(str(a).lower() if isinstance(a, bool) else str(a) for a in args)
        return cmd

    def _call(self, method: str, *args) -> Any:
        """
        Execute RPC call via CLI.

        Node-side RPC errors ("error code: ...") are not retryable; failing
        to reach the node is.
        """
        cmd = self._build_cmd(method, *args)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.node.timeout
            )
        except subprocess.TimeoutExpired:
            raise ProviderError(f"BTC RPC timeout: {method}")
        except OSError as e:
            raise ProviderError(f"BTC RPC could not run bitcoin-cli: {e}", retryable=False)

        if result.returncode != 0:
            error = result.stderr.strip()
            log.debug(f"BTC RPC error: {method} -> {error}")
            raise ProviderError(f"BTC RPC failed: {error}", retryable="error code:" not in error)

        output = result.stdout.strip()
        if not output:
            return None

        try:
            return json.loads(output)
        except json.JSONDecodeError:
            return output

    # =========================================================================
    # Chain queries
    # =========================================================================

    def get_block_height(self) -> int:
        height = self._call("getblockcount")
        if not isinstance(height, int):
            raise MalformedResponseError(f"getblockcount returned {height!r}")
        return height

    def get_transaction(self, tx_id: str) -> Optional[Dict]:
        """Verbose getrawtransaction. Confirmed txs need -txindex on the node."""
        try:
            tx = self._call("getrawtransaction", tx_id, True)
        except ProviderError as e:
            if RPC_INVALID_ADDRESS_OR_KEY in str(e):
                return None
            raise
        if not isinstance(tx, dict):
            raise MalformedResponseError(f"getrawtransaction {tx_id} returned {tx!r}")
        return tx

    def _scan(self, address: str) -> Tuple[int, List[Dict]]:
        result = self._call("scantxoutset", "start", json.dumps([f"addr({address})"]))
        if not isinstance(result, dict) or not result.get("success"):
            raise MalformedResponseError(f"scantxoutset failed for {address}: {result!r}")
        return result["height"], result.get("unspents", [])

    def _block_txs(self, height: int) -> List[Dict]:
        block_hash = self._call("getblockhash", height)
        block = self._call("getblock", block_hash, 2)
        if not isinstance(block, dict):
            raise MalformedResponseError(f"getblock {height} returned {block!r}")
        return block.get("tx", [])

    def _mempool_txs(self) -> List[Dict]:
        txs = []
        for tx_id in self._call("getrawmempool") or []:
            tx = self.get_transaction(tx_id)
            # None: evicted or mined between the two calls
            if tx is not None:
                txs.append(tx)
        return txs

    # =========================================================================
    # Provider
    # =========================================================================

    def get_unspent(self, address: str, min_value: Optional[int] = None) -> List[Utxo]:
        tip, unspents = self._scan(address)
        try:
            utxos = [
                Utxo(
                    tx_id=u["txid"],
                    vout=u["vout"],
                    value=btc_to_sats(u["amount"]),
                    confirmations=tip - u["height"] + 1,
                )
                for u in unspents
            ]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"scantxoutset entry missing {e}")
        return select_utxos(utxos, min_value)

    def get_balance(self, address: str) -> int:
        return sum(u.value for u in self.get_unspent(address))

    def send(self, address: str, amount: int, fee: Optional[int] = None) -> str:
        next_height = self.get_block_height() + 1
        tx_id = super().send(address, amount, fee)
        # build_payment puts the payment at output 0
        self._watched[address] = WatchedAddress(tx_id=tx_id, vout=0, next_height=next_height)
        return tx_id

    def funding_transactions(self, address: str, confirmations: int) -> Optional[str]:
        tip, unspents = self._scan(address)
        for u in unspents:
            self._remember(address, u["txid"], u["vout"], u["height"])
            if tip - u["height"] + 1 >= confirmations:
                return u["txid"]

        # Spent already, or still in the mempool
        watch = self._watched.get(address)
        if watch is None or watch.tx_id is None:
            return None
        if watch.height is None and not watch.spent:
            self._advance(address, watch, tip)
        if watch.height is None:
            return watch.tx_id if confirmations <= 0 else None
        if tip - watch.height + 1 >= confirmations:
            return watch.tx_id
        return None

    def get_secret(self, address: str) -> Optional[str]:
        watch = self._watched.get(address)
        if watch is None or watch.tx_id is None:
            self.funding_transactions(address, 1)
            watch = self._watched.get(address)
        if watch is None:
            # Nothing known: only the mempool and blocks from here on can be searched
            watch = WatchedAddress(next_height=self.get_block_height() + 1)
            self._watched[address] = watch

        if watch.spent:
            return watch.secret
        if watch.tx_id is not None and self._call("gettxout", watch.tx_id, watch.vout, True) is not None:
            return None  # still unspent

        self._advance(address, watch, self.get_block_height())
        if watch.spent:
            return watch.secret

        for tx in self._mempool_txs():
            for vin in tx.get("vin", []):
                if not self._spends(address, watch, vin):
                    continue
                secret = self._secret_from_input(vin)
                if secret is None:
                    return None  # refund, not final until mined
                watch.spent = True
                watch.secret = secret.hex()
                return watch.secret
        return None

    def _remember(self, address: str, tx_id: str, vout: int, height: int):
        watch = self._watched.get(address)
        if watch is None or watch.tx_id is None:
            self._watched[address] = WatchedAddress(tx_id=tx_id, vout=vout, height=height,
                                                    next_height=height)
        elif watch.tx_id == tx_id and watch.height is None:
            watch.height = height

    def _advance(self, address: str, watch: WatchedAddress, tip: int):
        """Search blocks not yet seen for the funding tx and the spend."""
        for height in range(watch.next_height, tip + 1):
            for tx in self._block_txs(height):
                if watch.height is None and tx.get("txid") == watch.tx_id:
                    watch.height = height
                for vin in tx.get("vin", []):
                    if self._spends(address, watch, vin):
                        secret = self._secret_from_input(vin)
                        watch.spent = True
                        watch.secret = secret.hex() if secret is not None else None
                        watch.next_height = height + 1
                        log.debug(f"Spend of {address} found in block {height}")
                        return
            watch.next_height = height + 1

    def _spends(self, address: str, watch: WatchedAddress, vin: Dict) -> bool:
        if watch.tx_id is not None and (vin.get("txid"), vin.get("vout")) == (watch.tx_id, watch.vout):
            return True
        return self._spent_script_address(vin) == address

    def _spent_script_address(self, vin: Dict) -> Optional[str]:
        """Address of the script revealed by an input (P2WSH or P2SH), if any."""
        stack = self._input_stack(vin)
        if not stack:
            return None
        if vin.get("txinwitness"):
            return p2wsh_address(stack[-1], self.network)
        return p2sh_address(stack[-1], self.network)

    def _input_stack(self, vin: Dict) -> Optional[List[bytes]]:
        try:
            if vin.get("txinwitness"):
                return [bytes.fromhex(item) for item in vin["txinwitness"]]
            return decode_pushes(bytes.fromhex(vin.get("scriptSig", {}).get("hex", "")))
        except (ValueError, ValidationError):
            return None

    def _secret_from_input(self, vin: Dict) -> Optional[bytes]:
        stack = self._input_stack(vin)
        if stack is None:
            return None
        return extract_secret(stack)

    def broadcast(self, tx: Transaction) -> str:
        try:
            tx_id = self._call("sendrawtransaction", tx.to_hex())
        except ProviderError as e:
            if e.retryable:
                raise
            error = rejection_from_message(str(e))
            log.error(f"Broadcast rejected ({error.reason.value}): {e}")
            raise error from e
        log.info(f"Broadcast {tx_id}")
        return tx_id
