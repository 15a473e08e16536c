"""
JSON-RPC Ledger: aiohttp Backend for an EVM Chat Contract

Reads the chat contract over plain JSON-RPC:
- eth_getLogs polling for MessageSent / FriendAdded / AccountCreated
- eth_call for getMessages, getFriends, usernames, x25519PublicKey

Contract ABI consumed:
    event MessageSent(address indexed from, address indexed to,
                      bytes32 indexed cidHash, uint256 timestamp)
    event FriendAdded(address indexed user, address indexed friend, string friendName)
    event AccountCreated(address indexed user, string name, bytes32 x25519PublicKey)
    function getMessages(address friendAddr) view
        returns (tuple(address sender, address receiver, uint256 timestamp, bytes32 cidHash)[])
    function getFriends() view returns (tuple(address friendAddress, string name, uint256 addedAt)[])
    function usernames(address) view returns (string)
    function x25519PublicKey(address) view returns (bytes32)

getMessages and getFriends are scoped to msg.sender, so calls set
`from` to the user being read. Topic hashes and 4-byte selectors are
deployment configuration (LedgerConfig).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, AsyncIterator, Optional

import aiohttp

from relaymesh.core.config import LedgerConfig
from relaymesh.core.errors import LedgerError
from relaymesh.core.types import Result, Ok, Err, normalize_address
from relaymesh.ledger.events import (
    AccountCreated,
    FriendAdded,
    LedgerEvent,
    LedgerFriend,
    LedgerMessage,
    MessageSent,
)

logger = logging.getLogger(__name__)

WORD = 32


# =============================================================================
# ABI DECODING
# =============================================================================
def hex_to_bytes(value: str) -> bytes:
    raw = value[2:] if value.startswith("0x") else value
    return bytes.fromhex(raw)


def word_at(data: bytes, offset: int) -> bytes:
    chunk = data[offset:offset + WORD]
    if len(chunk) != WORD:
        raise ValueError(f"truncated ABI data at offset {offset}")
    return chunk


def decode_uint(word: bytes) -> int:
    return int.from_bytes(word, "big")


def decode_address(word: bytes) -> str:
    return "0x" + word[-20:].hex()


def decode_bytes32(word: bytes) -> str:
    return "0x" + word.hex()


def decode_string(data: bytes, offset: int) -> str:
    """Dynamic string whose length word sits at offset."""
    length = decode_uint(word_at(data, offset))
    start = offset + WORD
    raw = data[start:start + length]
    if len(raw) != length:
        raise ValueError("truncated ABI string")
    return raw.decode("utf-8", errors="replace")


def encode_address(address: str) -> str:
    """Left-pad an address to a 32-byte argument word (hex, no 0x)."""
    return normalize_address(address)[2:].rjust(64, "0")


def decode_message_tuples(data: bytes) -> list[LedgerMessage]:
    """(address sender, address receiver, uint256 timestamp, bytes32 cidHash)[]"""
    base = decode_uint(word_at(data, 0))
    count = decode_uint(word_at(data, base))
    items: list[LedgerMessage] = []
    head = base + WORD
    for i in range(count):
        off = head + i * 4 * WORD
        items.append(LedgerMessage(
            sender=decode_address(word_at(data, off)),
            recipient=decode_address(word_at(data, off + WORD)),
            timestamp=decode_uint(word_at(data, off + 2 * WORD)),
            content_hash=decode_bytes32(word_at(data, off + 3 * WORD)),
        ))
    return items


def decode_friend_tuples(data: bytes) -> list[LedgerFriend]:
    """(address friendAddress, string name, uint256 addedAt)[]"""
    base = decode_uint(word_at(data, 0))
    count = decode_uint(word_at(data, base))
    head = base + WORD
    friends: list[LedgerFriend] = []
    for i in range(count):
        tuple_off = head + decode_uint(word_at(data, head + i * WORD))
        name_off = tuple_off + decode_uint(word_at(data, tuple_off + WORD))
        friends.append(LedgerFriend(
            address=decode_address(word_at(data, tuple_off)),
            name=decode_string(data, name_off),
        ))
    return friends


def decode_string_return(data: bytes) -> str:
    if not data:
        return ""
    return decode_string(data, decode_uint(word_at(data, 0)))


def decode_log(log: dict[str, Any], config: LedgerConfig) -> Optional[LedgerEvent]:
    """Map a raw eth_getLogs entry onto an event, or None for other topics."""
    topics = [t.lower() for t in log.get("topics", [])]
    if not topics:
        return None
    data = hex_to_bytes(log.get("data", "0x"))
    tx_hash = log.get("transactionHash")
    block_number = int(log["blockNumber"], 16) if log.get("blockNumber") else None
    topic0 = topics[0]

    if topic0 == config.topic_message_sent.lower():
        return MessageSent(
            sender=decode_address(hex_to_bytes(topics[1])),
            recipient=decode_address(hex_to_bytes(topics[2])),
            content_hash=decode_bytes32(hex_to_bytes(topics[3])),
            block_timestamp=decode_uint(word_at(data, 0)),
            tx_hash=tx_hash,
            block_number=block_number,
        )
    if topic0 == config.topic_friend_added.lower():
        return FriendAdded(
            user=decode_address(hex_to_bytes(topics[1])),
            friend=decode_address(hex_to_bytes(topics[2])),
            name=decode_string(data, decode_uint(word_at(data, 0))),
            tx_hash=tx_hash,
            block_number=block_number,
        )
    if topic0 == config.topic_account_created.lower():
        return AccountCreated(
            user=decode_address(hex_to_bytes(topics[1])),
            name=decode_string(data, decode_uint(word_at(data, 0))),
            public_key=decode_bytes32(word_at(data, WORD)),
            tx_hash=tx_hash,
            block_number=block_number,
        )
    return None


# =============================================================================
# CLIENT
# =============================================================================
class JsonRpcLedger:
    """
    LedgerClient over an EVM JSON-RPC endpoint.

    Usage:
        ledger = JsonRpcLedger(config.ledger)
        friends = await ledger.get_friends(address)
        async for event in ledger.stream_events():
            ...
    """

    __slots__ = ("_config", "_session", "_owns_session", "_ids", "_closed", "_next_block")

    def __init__(self, config: LedgerConfig, session: Optional[aiohttp.ClientSession] = None) -> None:
        if not config.rpc_url:
            raise ValueError("JsonRpcLedger requires ledger.rpc_url")
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)
        self._closed = False
        self._next_block: Optional[int] = config.start_block

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
        return self._session

    async def _rpc(self, method: str, params: list[Any]) -> Result[Any, LedgerError]:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with self._client().post(self._config.rpc_url, json=payload) as response:
                response.raise_for_status()
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return Err(LedgerError.unavailable(str(self._config.rpc_url), cause=e))

        if "error" in body:
            err = body["error"]
            message = err.get("message", "unknown") if isinstance(err, dict) else str(err)
            return Err(LedgerError.query_failed(method, str(params[:1]), cause=RuntimeError(message)))
        return Ok(body.get("result"))

    async def _call(
        self,
        method_name: str,
        selector: str,
        arg_address: Optional[str],
        from_address: Optional[str],
        subject: str,
    ) -> Result[bytes, LedgerError]:
        if not selector:
            return Err(LedgerError.query_failed(method_name, subject, cause=RuntimeError("selector not configured")))
        calldata = "0x" + selector.removeprefix("0x") + (encode_address(arg_address) if arg_address else "")
        tx: dict[str, str] = {"to": self._config.contract_address, "data": calldata}
        if from_address:
            tx["from"] = normalize_address(from_address)

        result = await self._rpc("eth_call", [tx, "latest"])
        if result.is_err():
            err = result.error
            return Err(LedgerError.query_failed(method_name, subject, cause=err))
        return Ok(hex_to_bytes(result.unwrap() or "0x"))

    async def get_messages_between(self, user: str, peer: str) -> Result[list[LedgerMessage], LedgerError]:
        raw = await self._call("getMessages", self._config.selector_get_messages, peer, user, f"{user},{peer}")
        if raw.is_err():
            return raw
        try:
            return Ok(decode_message_tuples(raw.unwrap()))
        except ValueError as e:
            return Err(LedgerError.decode_failed("getMessages result", cause=e))

    async def get_friends(self, user: str) -> Result[list[LedgerFriend], LedgerError]:
        raw = await self._call("getFriends", self._config.selector_get_friends, None, user, user)
        if raw.is_err():
            return raw
        try:
            return Ok(decode_friend_tuples(raw.unwrap()))
        except ValueError as e:
            return Err(LedgerError.decode_failed("getFriends result", cause=e))

    async def get_username(self, address: str) -> Result[str, LedgerError]:
        raw = await self._call("usernames", self._config.selector_get_username, address, None, address)
        if raw.is_err():
            return raw
        try:
            return Ok(decode_string_return(raw.unwrap()))
        except ValueError as e:
            return Err(LedgerError.decode_failed("usernames result", cause=e))

    async def get_public_key(self, address: str) -> Result[str, LedgerError]:
        raw = await self._call("x25519PublicKey", self._config.selector_get_public_key, address, None, address)
        if raw.is_err():
            return raw
        data = raw.unwrap()
        if len(data) < WORD:
            return Err(LedgerError.decode_failed("x25519PublicKey result"))
        return Ok(decode_bytes32(data[:WORD]))

    async def block_number(self) -> Result[int, LedgerError]:
        result = await self._rpc("eth_blockNumber", [])
        return result.map(lambda value: int(value, 16))

    async def ping(self) -> bool:
        return (await self.block_number()).is_ok()

    async def stream_events(self) -> AsyncIterator[LedgerEvent]:
        """Poll eth_getLogs from the last seen block onwards."""
        topics = [t for t in (
            self._config.topic_message_sent,
            self._config.topic_friend_added,
            self._config.topic_account_created,
        ) if t]

        while not self._closed:
            head = await self.block_number()
            if head.is_err():
                logger.warning("Ledger head query failed: %s", head.error)
                await asyncio.sleep(self._config.poll_interval_s)
                continue

            latest = head.unwrap()
            if self._next_block is None:
                self._next_block = latest + 1
            if self._next_block <= latest:
                logs = await self._rpc("eth_getLogs", [{
                    "address": self._config.contract_address,
                    "fromBlock": hex(self._next_block),
                    "toBlock": hex(latest),
                    "topics": [topics],
                }])
                if logs.is_err():
                    logger.warning("eth_getLogs failed: %s", logs.error)
                else:
                    for log in logs.unwrap() or []:
                        try:
                            event = decode_log(log, self._config)
                        except (ValueError, IndexError, KeyError) as e:
                            logger.warning("Skipping undecodable log %s: %s", log.get("transactionHash"), e)
                            continue
                        if event is not None:
                            yield event
                    self._next_block = latest + 1

            await asyncio.sleep(self._config.poll_interval_s)

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
