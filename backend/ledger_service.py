"""
TRANSACTION LEDGER RECORDER

Hash-chained audit trail for approved budget transactions.

Each block stores:
- index, timestamp (epoch ms)
- transactions (ledger entries + one reward entry)
- previous_hash, nonce, hash

hash = sha256(index + timestamp + canonical_json(transactions) + previous_hash + nonce)

The chain lives in an explicit store object:
- MongoLedgerStore: ledger_blocks / ledger_pending collections (survives restarts)
- InMemoryLedgerStore: process lifetime only (tests, scripts)

RULES:
- Blocks are append-only; an index can be written exactly once
- difficulty=N requires N leading zero hex digits (0 disables the nonce search)
- store_transaction NEVER raises; failures come back as {"success": False}
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError
from datetime import datetime
from typing import Optional, Dict, Any, List
import asyncio
import copy
import logging
import time
import uuid

from core.serialization import canonical_json, sha256_hex, to_canonical
import config

logger = logging.getLogger(__name__)


class ChainConflictError(Exception):
    """Raised when a block index is already taken by another writer"""
    pass


class LedgerError(Exception):
    """Raised when a ledger entry cannot be sealed"""
    pass


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# STORES
# =============================================================================

class LedgerStore:
    """
    Storage contract for the ledger.

    Pending entries are claimed under a claim id before mining so that two
    miners never seal the same entry.
    """

    async def latest_block(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def get_blocks(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def get_block(self, index: int) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def append_block(self, block: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def find_block_with_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def add_pending(self, entry: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def claim_pending(self, claim_id: str, entry_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def remove_claimed(self, claim_id: str) -> None:
        raise NotImplementedError

    async def release_claim(self, claim_id: str) -> None:
        raise NotImplementedError

    async def count_pending(self) -> int:
        raise NotImplementedError


class InMemoryLedgerStore(LedgerStore):
    """List-backed store. Returned blocks are copies; `chain` holds the originals."""

    def __init__(self):
        self.chain: List[Dict[str, Any]] = []
        self.pending: List[Dict[str, Any]] = []
        self.claims: Dict[str, List[Dict[str, Any]]] = {}

    async def latest_block(self):
        return copy.deepcopy(self.chain[-1]) if self.chain else None

    async def get_blocks(self):
        return copy.deepcopy(self.chain)

    async def get_block(self, index):
        if 0 <= index < len(self.chain):
            return copy.deepcopy(self.chain[index])
        return None

    async def append_block(self, block):
        if block["index"] != len(self.chain):
            raise ChainConflictError(f"Block index {block['index']} already taken")
        self.chain.append(copy.deepcopy(block))

    async def find_block_with_transaction(self, transaction_id):
        for block in self.chain:
            for entry in block["transactions"]:
                if entry.get("id") == transaction_id:
                    return copy.deepcopy(block)
        return None

    async def add_pending(self, entry):
        self.pending.append(copy.deepcopy(entry))

    async def claim_pending(self, claim_id, entry_ids=None):
        claimed = [e for e in self.pending if entry_ids is None or e["id"] in entry_ids]
        self.pending = [e for e in self.pending if e not in claimed]
        self.claims[claim_id] = claimed
        return copy.deepcopy(claimed)

    async def remove_claimed(self, claim_id):
        self.claims.pop(claim_id, None)

    async def release_claim(self, claim_id):
        self.pending = self.claims.pop(claim_id, []) + self.pending

    async def count_pending(self):
        return len(self.pending)


class MongoLedgerStore(LedgerStore):
    """MongoDB-backed store. A unique index on block index detects competing writers."""

    BLOCKS = "ledger_blocks"
    PENDING = "ledger_pending"
    BLOCK_PROJECTION = {"_id": 0}
    PENDING_PROJECTION = {"_id": 0, "claim_id": 0, "queued_at": 0}

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def create_indexes(self):
        """Create required indexes for the ledger collections."""
        await self.db[self.BLOCKS].create_index(
            [("index", ASCENDING)],
            unique=True,
            name="idx_ledger_block_index_unique"
        )
        await self.db[self.BLOCKS].create_index(
            [("transactions.id", ASCENDING)],
            name="idx_ledger_transaction_id"
        )
        await self.db[self.PENDING].create_index(
            [("claim_id", ASCENDING)],
            name="idx_ledger_pending_claim"
        )
        logger.info("[LEDGER] Created ledger indexes")

    async def latest_block(self):
        return await self.db[self.BLOCKS].find_one(
            {}, self.BLOCK_PROJECTION, sort=[("index", DESCENDING)]
        )

    async def get_blocks(self):
        cursor = self.db[self.BLOCKS].find({}, self.BLOCK_PROJECTION).sort("index", ASCENDING)
        return await cursor.to_list(length=None)

    async def get_block(self, index):
        return await self.db[self.BLOCKS].find_one({"index": index}, self.BLOCK_PROJECTION)

    async def append_block(self, block):
        try:
            await self.db[self.BLOCKS].insert_one(dict(block))
        except DuplicateKeyError:
            raise ChainConflictError(f"Block index {block['index']} already taken")

    async def find_block_with_transaction(self, transaction_id):
        return await self.db[self.BLOCKS].find_one(
            {"transactions.id": transaction_id}, self.BLOCK_PROJECTION
        )

    async def add_pending(self, entry):
        doc = dict(entry)
        doc["claim_id"] = None
        doc["queued_at"] = datetime.utcnow()
        await self.db[self.PENDING].insert_one(doc)

    async def claim_pending(self, claim_id, entry_ids=None):
        query = {"claim_id": None}
        if entry_ids is not None:
            query["id"] = {"$in": entry_ids}
        await self.db[self.PENDING].update_many(
            query,
            {"$set": {"claim_id": claim_id}}
        )
        cursor = self.db[self.PENDING].find(
            {"claim_id": claim_id}, self.PENDING_PROJECTION
        ).sort("queued_at", ASCENDING)
        return await cursor.to_list(length=None)

    async def remove_claimed(self, claim_id):
        await self.db[self.PENDING].delete_many({"claim_id": claim_id})

    async def release_claim(self, claim_id):
        await self.db[self.PENDING].update_many(
            {"claim_id": claim_id},
            {"$set": {"claim_id": None}}
        )

    async def count_pending(self):
        return await self.db[self.PENDING].count_documents({"claim_id": None})


# =============================================================================
# LEDGER SERVICE
# =============================================================================

class LedgerService:
    """
    Hash-chained ledger over a LedgerStore.

    Appends are serialised per process with an asyncio.Lock; across processes
    the store rejects a second block at the same index and the block is
    re-mined on top of the new tip.
    """

    MAX_RETRIES = 5
    SEAL_WAIT_MS = 50
    GENESIS_PREVIOUS_HASH = "0"

    def __init__(
        self,
        store: LedgerStore,
        difficulty: int = config.LEDGER_DIFFICULTY,
        mining_reward: float = config.LEDGER_MINING_REWARD,
        system_address: str = config.LEDGER_SYSTEM_ADDRESS
    ):
        if difficulty < 0:
            raise ValueError("difficulty must be >= 0")
        self.store = store
        self.difficulty = difficulty
        self.mining_reward = mining_reward
        self.system_address = system_address
        self._lock = asyncio.Lock()

    # =========================================================================
    # HASHING
    # =========================================================================

    @staticmethod
    def calculate_hash(
        index: int,
        timestamp: int,
        transactions: List[Dict[str, Any]],
        previous_hash: str,
        nonce: int
    ) -> str:
        return sha256_hex(
            f"{index}{timestamp}{canonical_json(transactions)}{previous_hash}{nonce}"
        )

    @staticmethod
    def sign_transaction(data: Dict[str, Any], timestamp: int) -> str:
        """Deterministic 16-hex-char fingerprint of the payload. Not a signature."""
        return sha256_hex(canonical_json(data) + str(timestamp))[:16]

    def mine_block(self, block: Dict[str, Any]) -> str:
        """Increment the nonce from 0 until the hash meets the difficulty target."""
        target = "0" * self.difficulty
        block["nonce"] = 0
        block_hash = self._hash_block(block)
        while not block_hash.startswith(target):
            block["nonce"] += 1
            block_hash = self._hash_block(block)
        return block_hash

    def _hash_block(self, block: Dict[str, Any]) -> str:
        return self.calculate_hash(
            block["index"],
            block["timestamp"],
            block["transactions"],
            block["previous_hash"],
            block["nonce"]
        )

    # =========================================================================
    # CHAIN
    # =========================================================================

    async def ensure_genesis(self) -> Dict[str, Any]:
        """Return the latest block, creating the genesis block on an empty store."""
        latest = await self.store.latest_block()
        if latest is not None:
            return latest

        genesis = {
            "index": 0,
            "timestamp": now_ms(),
            "transactions": [],
            "previous_hash": self.GENESIS_PREVIOUS_HASH,
            "nonce": 0,
        }
        genesis["hash"] = self._hash_block(genesis)
        try:
            await self.store.append_block(genesis)
            logger.info(f"[LEDGER] Genesis block created: {genesis['hash']}")
        except ChainConflictError:
            logger.debug("[LEDGER] Genesis block already written by another process")
            return await self.store.latest_block()
        return genesis

    async def get_latest_block(self) -> Dict[str, Any]:
        return await self.ensure_genesis()

    async def create_transaction(self, transaction_data: Dict[str, Any]) -> str:
        """Queue a ledger entry for the next block. Returns the entry id."""
        entry = self._build_entry(transaction_data)
        await self.store.add_pending(entry)
        return entry["id"]

    def _build_entry(self, transaction_data: Dict[str, Any]) -> Dict[str, Any]:
        timestamp = now_ms()
        data = to_canonical(transaction_data)
        return {
            "id": str(uuid.uuid4()),
            "timestamp": timestamp,
            "data": data,
            "signature": self.sign_transaction(data, timestamp),
        }

    async def mine_pending_transactions(self, reward_address: str) -> Dict[str, Any]:
        """Seal every pending entry plus a reward entry into a new block."""
        async with self._lock:
            return await self._mine_pending(reward_address)

    async def _mine_pending(
        self,
        reward_address: str,
        entry_ids: Optional[List[str]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Seal claimed entries into one block. With entry_ids only those entries
        are claimed, and None is returned when another miner already took them.
        """
        claim_id = uuid.uuid4().hex
        pending = await self.store.claim_pending(claim_id, entry_ids)
        if entry_ids is not None and not pending:
            await self.store.release_claim(claim_id)
            return None
        transactions = pending + [{
            "from": None,
            "to": reward_address,
            "amount": self.mining_reward,
            "timestamp": now_ms(),
        }]

        try:
            for attempt in range(self.MAX_RETRIES):
                latest = await self.ensure_genesis()
                block = {
                    "index": latest["index"] + 1,
                    "timestamp": now_ms(),
                    "transactions": transactions,
                    "previous_hash": latest["hash"],
                    "nonce": 0,
                }
                block["hash"] = await asyncio.to_thread(self.mine_block, block)

                try:
                    await self.store.append_block(block)
                except ChainConflictError:
                    logger.warning(
                        f"[LEDGER] Block index {block['index']} taken, re-mining (attempt {attempt + 1})"
                    )
                    continue

                await self.store.remove_claimed(claim_id)
                logger.info(
                    f"[LEDGER] Mined block {block['index']} with {len(transactions)} entries, "
                    f"nonce={block['nonce']} hash={block['hash']}"
                )
                return block
        except Exception:
            await self.store.release_claim(claim_id)
            raise

        await self.store.release_claim(claim_id)
        raise ChainConflictError(
            f"Failed to append block after {self.MAX_RETRIES} attempts"
        )

    async def store_transaction(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record a budget transaction on the ledger and seal it immediately.

        Returns {"success": True, transaction_id, block_hash, block_index,
        confirmation_time} or {"success": False, "error": ...}.
        """
        try:
            receipt = transaction.get("receipt") or {}
            ledger_data = {
                "type": "budget_transaction",
                "transaction_id": transaction.get("_id") or transaction.get("id"),
                "budget_id": transaction.get("budget_id"),
                "description": transaction.get("description"),
                "amount": transaction.get("amount"),
                "category": transaction.get("category"),
                "status": transaction.get("status"),
                "timestamp": transaction.get("created_at"),
                "receipt_hash": sha256_hex(receipt["url"]) if receipt.get("url") else None,
                "transaction_hash": transaction.get("transaction_hash"),
            }

            async with self._lock:
                entry_id = await self.create_transaction(ledger_data)
                block = await self._mine_pending(self.system_address, [entry_id])

            if block is None:
                # Claimed by a competing miner; wait for its block to land
                block = await self._wait_for_block(entry_id)

            return {
                "success": True,
                "transaction_id": entry_id,
                "block_hash": block["hash"],
                "block_index": block["index"],
                "confirmation_time": datetime.utcnow().isoformat(),
            }
        except Exception as e:
            logger.error(f"[LEDGER] Error storing transaction: {str(e)}")
            return {"success": False, "error": str(e)}

    async def _wait_for_block(self, entry_id: str) -> Dict[str, Any]:
        for attempt in range(self.MAX_RETRIES):
            block = await self.store.find_block_with_transaction(entry_id)
            if block is not None:
                return block
            await asyncio.sleep(self.SEAL_WAIT_MS * (attempt + 1) / 1000)
        raise LedgerError(f"Ledger entry {entry_id} was not sealed")

    async def is_chain_valid(self) -> bool:
        """Verify linkage, contiguous indexes and stored hashes for every block after genesis."""
        blocks = await self.store.get_blocks()
        for i in range(1, len(blocks)):
            current = blocks[i]
            previous = blocks[i - 1]

            if current["index"] != previous["index"] + 1:
                logger.warning(f"[LEDGER] Index gap before block {current['index']}")
                return False

            if current["previous_hash"] != previous["hash"]:
                logger.warning(f"[LEDGER] Broken link at block {current['index']}")
                return False

            if current["hash"] != self._hash_block(current):
                logger.warning(f"[LEDGER] Hash mismatch at block {current['index']}")
                return False

        return True

    # =========================================================================
    # READ MODELS
    # =========================================================================

    async def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        block = await self.store.find_block_with_transaction(transaction_id)
        if block is None:
            return None
        for entry in block["transactions"]:
            if entry.get("id") == transaction_id:
                return {
                    **entry,
                    "block_hash": block["hash"],
                    "block_index": block["index"],
                    "confirmed": True,
                }
        return None

    async def get_block(self, index: int) -> Optional[Dict[str, Any]]:
        return await self.store.get_block(index)

    async def get_balance(self, address: str) -> float:
        balance = 0.0
        for block in await self.store.get_blocks():
            for entry in block["transactions"]:
                if entry.get("to") == address:
                    balance += entry.get("amount", 0)
                if entry.get("from") == address:
                    balance -= entry.get("amount", 0)
        return balance

    async def get_stats(self) -> Dict[str, Any]:
        latest = await self.ensure_genesis()
        blocks = await self.store.get_blocks()
        return {
            "total_blocks": len(blocks),
            "total_transactions": sum(len(b["transactions"]) for b in blocks),
            "pending_transactions": await self.store.count_pending(),
            "is_chain_valid": await self.is_chain_valid(),
            "last_block_hash": latest["hash"],
            "chain_length": len(blocks),
            "difficulty": self.difficulty,
        }
