"""
Polygon blockchain client for on-chain settlement.
Merges UP+DOWN pairs back to USDC through the funder's Gnosis Safe.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from ..utils.logger import get_logger

logger = get_logger("polygon")


# Gnosis ConditionalTokens (ERC-1155) on Polygon
CONDITIONAL_TOKENS_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"

# USDC.e collateral on Polygon
USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"

USDC_DECIMALS = 6
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_BYTES32 = b"\x00" * 32

# Binary partition: index set 1 = UP, 2 = DOWN
BINARY_PARTITION = [1, 2]

# Used when gas estimation fails
DEFAULT_GAS_LIMIT = 500_000

# Below this many pairs on-chain a merge is not attempted
MIN_ONCHAIN_PAIRS = 0.001

CONDITIONAL_TOKENS_ABI = [
    {
        "inputs": [
            {"name": "collateralToken", "type": "address"},
            {"name": "parentCollectionId", "type": "bytes32"},
            {"name": "conditionId", "type": "bytes32"},
            {"name": "partition", "type": "uint256[]"},
            {"name": "amount", "type": "uint256"}
        ],
        "name": "mergePositions",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "id", "type": "uint256"}
        ],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    }
]

_SAFE_TX_INPUTS = [
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "operation", "type": "uint8"},
    {"name": "safeTxGas", "type": "uint256"},
    {"name": "baseGas", "type": "uint256"},
    {"name": "gasPrice", "type": "uint256"},
    {"name": "gasToken", "type": "address"},
    {"name": "refundReceiver", "type": "address"},
]

GNOSIS_SAFE_ABI = [
    {
        "inputs": _SAFE_TX_INPUTS + [{"name": "signatures", "type": "bytes"}],
        "name": "execTransaction",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "payable",
        "type": "function"
    },
    {
        "inputs": _SAFE_TX_INPUTS + [{"name": "_nonce", "type": "uint256"}],
        "name": "getTransactionHash",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "nonce",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    }
]


@dataclass
class TransactionResult:
    """Result of a blockchain transaction."""
    success: bool
    tx_hash: str
    gas_used: int = 0
    gas_cost_wei: int = 0
    amount: float = 0.0
    error: Optional[str] = None


def to_bytes32(hex_str: str) -> bytes:
    """Hex condition ID -> 32 bytes, left padded."""
    return Web3.to_bytes(hexstr=hex_str).rjust(32, b"\x00")


def position_id(condition_id: str, index_set: int) -> int:
    """
    ERC-1155 token ID for one outcome of a condition.

    collectionId = keccak256(parentCollectionId | conditionId | indexSet)
    positionId = keccak256(collateral | collectionId)
    """
    collection_id = Web3.solidity_keccak(
        ["bytes32", "bytes32", "uint256"],
        [ZERO_BYTES32, to_bytes32(condition_id), index_set]
    )
    return int.from_bytes(
        Web3.solidity_keccak(
            ["address", "bytes32"],
            [Web3.to_checksum_address(USDC_ADDRESS), collection_id]
        ),
        "big"
    )


class PolygonClient:
    """
    Client for Polygon settlement operations.

    The EOA holding merge_private_key is an owner of the funder Gnosis
    Safe. It signs the Safe transaction hash and submits
    execTransaction; the Safe then calls mergePositions, burning equal
    UP and DOWN amounts and receiving 1 USDC per pair.
    """

    def __init__(
        self,
        rpc_url: str,
        merge_private_key: str,
        safe_address: str,
        chain_id: int = 137,
        receipt_timeout: float = 60.0,
        receipt_poll_interval: float = 3.0
    ):
        """
        Initialize Polygon client.

        Args:
            rpc_url: Polygon RPC endpoint URL
            merge_private_key: Key of a Safe owner
            safe_address: Gnosis Safe holding the tokens (funder address)
            chain_id: 137 for Polygon mainnet
            receipt_timeout: Seconds to wait for a merge to confirm
            receipt_poll_interval: Seconds between receipt polls
        """
        self.rpc_url = rpc_url
        self.merge_private_key = merge_private_key
        self.safe_address = safe_address
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_interval = receipt_poll_interval

        self._web3: Optional[Web3] = None
        self._account = None
        self._ctf_contract = None
        self._safe_contract = None
        self._ready = False

    def is_ready(self) -> bool:
        """True when configured and connected."""
        return self._ready

    async def initialize(self) -> None:
        """
        Initialize Web3 connection and contracts.

        Missing configuration or an unreachable RPC leaves the client
        not ready; merges are then skipped rather than failing startup.
        """
        missing = [
            name for name, value in (
                ("MERGE_PRIVATE_KEY", self.merge_private_key),
                ("FUNDER_ADDRESS", self.safe_address),
                ("POLYGON_RPC", self.rpc_url),
            ) if not value
        ]
        if missing:
            logger.warning(f"On-chain merge disabled, not set: {', '.join(missing)}")
            return

        logger.info("Initializing Polygon client")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._setup_web3)
        except Exception as e:
            logger.error(f"On-chain merge disabled: {e}")
            return

        self._ready = True
        logger.info(
            "Polygon client ready",
            extra={"safe": self.safe_address, "signer": self._account.address}
        )

    def _setup_web3(self) -> None:
        """Set up Web3 instance and contracts."""
        self._web3 = Web3(Web3.HTTPProvider(self.rpc_url))
        self._web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        if not self._web3.is_connected():
            raise RuntimeError(f"Failed to connect to Polygon RPC: {self.rpc_url}")

        self._account = Account.from_key(self.merge_private_key)
        self.safe_address = Web3.to_checksum_address(self.safe_address)

        self._ctf_contract = self._web3.eth.contract(
            address=Web3.to_checksum_address(CONDITIONAL_TOKENS_ADDRESS),
            abi=CONDITIONAL_TOKENS_ABI
        )
        self._safe_contract = self._web3.eth.contract(
            address=self.safe_address,
            abi=GNOSIS_SAFE_ABI
        )

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def get_token_balance(self, token_id: int) -> float:
        """Safe balance of one conditional token, in token units."""
        raw = await self._run(
            lambda: self._ctf_contract.functions.balanceOf(self.safe_address, token_id).call()
        )
        return raw / 10 ** USDC_DECIMALS

    async def get_onchain_pairs(
        self,
        condition_id: str,
        up_token_id: str = "",
        down_token_id: str = ""
    ) -> float:
        """
        Mergeable pairs actually held by the Safe.

        Token IDs are derived from the condition when not supplied.
        Balance lookup errors count as zero.
        """
        if not self._ready:
            return 0.0

        try:
            up_id = int(up_token_id) if up_token_id else position_id(condition_id, 1)
            down_id = int(down_token_id) if down_token_id else position_id(condition_id, 2)

            up, down = await asyncio.gather(
                self.get_token_balance(up_id),
                self.get_token_balance(down_id)
            )
            return min(up, down)

        except Exception as e:
            logger.error(f"Failed to read on-chain balances for {condition_id}: {e}")
            return 0.0

    async def merge(self, condition_id: str, pairs: float) -> TransactionResult:
        """
        Merge UP+DOWN pairs back to USDC via the Safe.

        Args:
            condition_id: Market condition ID (hex string)
            pairs: Pairs to merge, in token units

        Returns:
            TransactionResult; success only once the receipt confirms
        """
        if not self._ready:
            return TransactionResult(success=False, tx_hash="", error="merger not ready")

        logger.info(f"Merging {pairs:.4f} pairs for condition {condition_id}")

        try:
            return await asyncio.wait_for(
                self._merge(condition_id, pairs),
                timeout=self.receipt_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Merge timed out after {self.receipt_timeout:.0f}s for {condition_id}")
            return TransactionResult(success=False, tx_hash="", error="merge timed out")
        except Exception as e:
            logger.error(f"Merge failed: {e}")
            return TransactionResult(success=False, tx_hash="", error=str(e))

    async def _merge(self, condition_id: str, pairs: float) -> TransactionResult:
        amount = int(pairs * 10 ** USDC_DECIMALS)
        if amount <= 0:
            return TransactionResult(success=False, tx_hash="", error="amount too small")

        calldata = self._ctf_contract.encode_abi(
            "mergePositions",
            args=[
                Web3.to_checksum_address(USDC_ADDRESS),
                ZERO_BYTES32,
                to_bytes32(condition_id),
                BINARY_PARTITION,
                amount
            ]
        )
        safe_args = [
            self._ctf_contract.address,
            0,
            Web3.to_bytes(hexstr=calldata),
            0,  # CALL
            0, 0, 0,
            ZERO_ADDRESS,
            ZERO_ADDRESS,
        ]

        safe_nonce = await self._run(lambda: self._safe_contract.functions.nonce().call())
        safe_hash = await self._run(
            lambda: self._safe_contract.functions.getTransactionHash(*safe_args, safe_nonce).call()
        )

        # eth-account already returns v as 27/28, which the Safe expects
        signature = Account.unsafe_sign_hash(safe_hash, self.merge_private_key).signature
        exec_fn = self._safe_contract.functions.execTransaction(*safe_args, bytes(signature))

        signer = self._account.address
        nonce = await self._run(
            lambda: self._web3.eth.get_transaction_count(signer, "pending")
        )
        gas_price = await self._run(lambda: self._web3.eth.gas_price)

        try:
            gas_estimate = await self._run(lambda: exec_fn.estimate_gas({"from": signer}))
        except Exception as e:
            logger.warning(f"Gas estimate failed, using {DEFAULT_GAS_LIMIT}: {e}")
            gas_estimate = DEFAULT_GAS_LIMIT

        # Add 20% buffer to gas estimate
        gas_limit = int(gas_estimate * 1.2)

        tx = exec_fn.build_transaction({
            "from": signer,
            "nonce": nonce,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "chainId": self.chain_id,
        })
        signed_tx = self._account.sign_transaction(tx)

        tx_hash = await self._run(
            lambda: self._web3.eth.send_raw_transaction(signed_tx.raw_transaction)
        )
        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"Merge transaction sent: {tx_hash_hex}")

        receipt = await self._run(
            lambda: self._web3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self.receipt_timeout,
                poll_latency=self.receipt_poll_interval
            )
        )

        gas_used = receipt["gasUsed"]
        gas_cost_wei = gas_used * gas_price

        if receipt["status"] != 1:
            return TransactionResult(
                success=False,
                tx_hash=tx_hash_hex,
                gas_used=gas_used,
                gas_cost_wei=gas_cost_wei,
                error=f"Transaction reverted in block {receipt['blockNumber']}"
            )

        logger.info(
            "Merge successful",
            extra={
                "tx_hash": tx_hash_hex,
                "gas_used": gas_used,
                "block": receipt["blockNumber"],
                "pairs": pairs
            }
        )
        return TransactionResult(
            success=True,
            tx_hash=tx_hash_hex,
            gas_used=gas_used,
            gas_cost_wei=gas_cost_wei,
            amount=pairs
        )
