"""
Ledger records and their canonical binary encoding.

Every record published to the ledger is a tagged, versioned struct:

- 1 byte: record tag
- 1 byte: format version (1)
- fields, big-endian:
    integers   fixed width unsigned
    strings    u16 length + UTF-8
    blobs      u32 length + bytes
    lists      u16 count + items
    optionals  1 presence byte + value

There is exactly one encoding per record. Anything that does not parse
(unknown tag or version, truncation, trailing bytes, bad field sizes) raises
MalformedBundleError; decoders never guess between hex / base64 / raw.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional

from .exceptions import MalformedBundleError


FORMAT_VERSION = 1

TAG_FEED_STATE = 0x01
TAG_GRANT = 0x02
TAG_REKEY_EVENT = 0x03
TAG_ENCRYPTED_POST = 0x04
TAG_GRANT_BUNDLE = 0x05
TAG_KEY_SNAPSHOT = 0x06

KEY_SIZE = 32
NONCE_SIZE = 24


class NodeId(NamedTuple):
    """Stable identifier of a key tree node. Level 0 is the root."""

    level: int
    index: int

    @property
    def is_root(self) -> bool:
        return self.level == 0

    def parent(self) -> "NodeId":
        if self.is_root:
            raise ValueError("root has no parent")
        return NodeId(self.level - 1, self.index >> 1)

    def sibling(self) -> "NodeId":
        if self.is_root:
            raise ValueError("root has no sibling")
        return NodeId(self.level, self.index ^ 1)

    def __str__(self) -> str:
        return f"{self.level}:{self.index}"


# ----------------------------------------------------------------------
# Encoding helpers
# ----------------------------------------------------------------------


class _Writer:
    def __init__(self, tag: int):
        self._buf = bytearray()
        self._buf += struct.pack("BB", tag, FORMAT_VERSION)

    def u8(self, value: int) -> "_Writer":
        self._buf += struct.pack("B", value)
        return self

    def u16(self, value: int) -> "_Writer":
        self._buf += struct.pack(">H", value)
        return self

    def u32(self, value: int) -> "_Writer":
        self._buf += struct.pack(">I", value)
        return self

    def blob(self, value: bytes) -> "_Writer":
        self.u32(len(value))
        self._buf += value
        return self

    def text(self, value: str) -> "_Writer":
        raw = value.encode("utf-8")
        if len(raw) > 0xFFFF:
            raise ValueError("string field too long")
        self.u16(len(raw))
        self._buf += raw
        return self

    def node(self, node: NodeId) -> "_Writer":
        return self.u8(node.level).u32(node.index)

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class _Reader:
    def __init__(self, data: bytes, tag: int, name: str):
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise MalformedBundleError(f"{name}: expected bytes, got {type(data).__name__}")
        self._data = bytes(data)
        self._pos = 0
        self._name = name
        got_tag, version = self._unpack("BB", 2)
        if got_tag != tag:
            raise MalformedBundleError(f"{name}: unexpected record tag 0x{got_tag:02x}")
        if version != FORMAT_VERSION:
            raise MalformedBundleError(f"{name}: unsupported format version {version}")

    def _take(self, n: int) -> bytes:
        if self._pos + n > len(self._data):
            raise MalformedBundleError(f"{self._name}: truncated record")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def _unpack(self, fmt: str, n: int):
        return struct.unpack(">" + fmt, self._take(n))

    def u8(self) -> int:
        return self._unpack("B", 1)[0]

    def u16(self) -> int:
        return self._unpack("H", 2)[0]

    def u32(self) -> int:
        return self._unpack("I", 4)[0]

    def blob(self) -> bytes:
        return self._take(self.u32())

    def fixed_blob(self, size: int, what: str) -> bytes:
        value = self.blob()
        if len(value) != size:
            raise MalformedBundleError(f"{self._name}: {what} must be {size} bytes")
        return value

    def text(self) -> str:
        raw = self._take(self.u16())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedBundleError(f"{self._name}: invalid UTF-8 string") from e

    def node(self) -> NodeId:
        return NodeId(self.u8(), self.u32())

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise MalformedBundleError(f"{self._name}: trailing bytes after record")


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class NodeKey:
    node: NodeId
    version: int
    key: bytes


@dataclass(frozen=True)
class GrantBundle:
    """Plaintext sealed inside a Grant: path keys, current CEK and epoch."""

    slot: int
    epoch: int
    cek: bytes
    path_keys: List[NodeKey] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        w = _Writer(TAG_GRANT_BUNDLE).u32(self.slot).u32(self.epoch).blob(self.cek)
        w.u16(len(self.path_keys))
        for nk in self.path_keys:
            w.node(nk.node).u32(nk.version).blob(nk.key)
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "GrantBundle":
        r = _Reader(data, TAG_GRANT_BUNDLE, "GrantBundle")
        slot = r.u32()
        epoch = r.u32()
        cek = r.fixed_blob(KEY_SIZE, "cek")
        keys = []
        for _ in range(r.u16()):
            node = r.node()
            version = r.u32()
            keys.append(NodeKey(node, version, r.fixed_blob(KEY_SIZE, "node key")))
        r.finish()
        if epoch < 1:
            raise MalformedBundleError("GrantBundle: epoch must be >= 1")
        if not keys:
            raise MalformedBundleError("GrantBundle: no path keys")
        return cls(slot=slot, epoch=epoch, cek=cek, path_keys=keys)


@dataclass(frozen=True)
class Grant:
    follower_id: str
    slot: int
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return (
            _Writer(TAG_GRANT)
            .text(self.follower_id)
            .u32(self.slot)
            .blob(self.ciphertext)
            .getvalue()
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Grant":
        r = _Reader(data, TAG_GRANT, "Grant")
        grant = cls(follower_id=r.text(), slot=r.u32(), ciphertext=r.blob())
        r.finish()
        return grant


@dataclass(frozen=True)
class RekeyPacket:
    """A new node key version, encrypted under a key the evicted follower never held."""

    target: NodeId
    target_version: int
    encrypting: NodeId
    encrypting_version: int
    ciphertext: bytes


@dataclass(frozen=True)
class KeySnapshot:
    """Every node key a revocation bumped; sealed for the owner's other devices."""

    epoch: int
    keys: List[NodeKey] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        w = _Writer(TAG_KEY_SNAPSHOT).u32(self.epoch).u16(len(self.keys))
        for nk in self.keys:
            w.node(nk.node).u32(nk.version).blob(nk.key)
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "KeySnapshot":
        r = _Reader(data, TAG_KEY_SNAPSHOT, "KeySnapshot")
        epoch = r.u32()
        keys = []
        for _ in range(r.u16()):
            node = r.node()
            version = r.u32()
            keys.append(NodeKey(node, version, r.fixed_blob(KEY_SIZE, "node key")))
        r.finish()
        return cls(epoch=epoch, keys=keys)


@dataclass(frozen=True)
class RekeyEvent:
    new_epoch: int
    packets: List[RekeyPacket]
    root_version: int
    encrypted_cek: bytes
    owner_snapshot: bytes = b""

    def to_bytes(self) -> bytes:
        w = _Writer(TAG_REKEY_EVENT).u32(self.new_epoch)
        w.u16(len(self.packets))
        for p in self.packets:
            w.node(p.target).u32(p.target_version)
            w.node(p.encrypting).u32(p.encrypting_version)
            w.blob(p.ciphertext)
        w.u32(self.root_version).blob(self.encrypted_cek).blob(self.owner_snapshot)
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "RekeyEvent":
        r = _Reader(data, TAG_REKEY_EVENT, "RekeyEvent")
        new_epoch = r.u32()
        packets = []
        for _ in range(r.u16()):
            packets.append(
                RekeyPacket(
                    target=r.node(),
                    target_version=r.u32(),
                    encrypting=r.node(),
                    encrypting_version=r.u32(),
                    ciphertext=r.blob(),
                )
            )
        root_version = r.u32()
        encrypted_cek = r.blob()
        owner_snapshot = r.blob()
        r.finish()
        if new_epoch < 2:
            raise MalformedBundleError("RekeyEvent: epoch must be >= 2")
        return cls(new_epoch, packets, root_version, encrypted_cek, owner_snapshot)


@dataclass(frozen=True)
class FeedState:
    owner_id: str
    encrypted_seed: bytes
    tree_capacity: int = 1024
    max_epoch: int = 2000

    def to_bytes(self) -> bytes:
        return (
            _Writer(TAG_FEED_STATE)
            .text(self.owner_id)
            .blob(self.encrypted_seed)
            .u32(self.tree_capacity)
            .u32(self.max_epoch)
            .getvalue()
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "FeedState":
        r = _Reader(data, TAG_FEED_STATE, "FeedState")
        state = cls(
            owner_id=r.text(),
            encrypted_seed=r.blob(),
            tree_capacity=r.u32(),
            max_epoch=r.u32(),
        )
        r.finish()
        return state


@dataclass(frozen=True)
class EncryptedPost:
    """Fields added to an otherwise plain post record."""

    ciphertext: bytes
    nonce: bytes
    epoch: int
    teaser: Optional[str] = None

    def to_bytes(self) -> bytes:
        w = _Writer(TAG_ENCRYPTED_POST).u32(self.epoch).blob(self.nonce).blob(self.ciphertext)
        if self.teaser is None:
            w.u8(0)
        else:
            w.u8(1).text(self.teaser)
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedPost":
        r = _Reader(data, TAG_ENCRYPTED_POST, "EncryptedPost")
        epoch = r.u32()
        nonce = r.fixed_blob(NONCE_SIZE, "nonce")
        ciphertext = r.blob()
        flag = r.u8()
        if flag not in (0, 1):
            raise MalformedBundleError("EncryptedPost: bad teaser flag")
        teaser = r.text() if flag else None
        r.finish()
        return cls(ciphertext=ciphertext, nonce=nonce, epoch=epoch, teaser=teaser)
