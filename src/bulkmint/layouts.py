"""On-ledger record layouts of the token and record programs.

Little-endian, length-prefixed encoding: strings are a u32 length plus UTF-8 bytes,
options a one-byte tag, vectors a u32 count. Decoding never trusts the input; any
mismatch raises ``StateDecodeError`` so the caller can skip the item.
"""

import struct
from dataclasses import dataclass, replace
from enum import IntEnum

from solders.pubkey import Pubkey

import bulkmint.constants as C
from bulkmint.errors import ConfigurationError, StateDecodeError


class Key(IntEnum):
    UNINITIALIZED = 0
    EDITION_V1 = 1
    MASTER_EDITION_V1 = 2
    RESERVATION_LIST_V1 = 3
    METADATA_V1 = 4
    RESERVATION_LIST_V2 = 5
    MASTER_EDITION_V2 = 6
    EDITION_MARKER = 7


def pubkey_of(address: str) -> Pubkey:
    try:
        return Pubkey.from_string(address)
    except ValueError as e:
        raise ConfigurationError(f"Invalid address {address!r}: {e}") from e


def pubkey_bytes(address: str) -> bytes:
    return bytes(pubkey_of(address))


def pubkey_str(raw: bytes) -> str:
    return str(Pubkey.from_bytes(raw))


class Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise StateDecodeError(f"Unexpected end of data at offset {self.pos} (need {n} bytes)")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return struct.unpack("<H", self.take(2))[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def bool(self) -> bool:
        v = self.u8()
        if v > 1:
            raise StateDecodeError(f"Invalid bool byte {v} at offset {self.pos - 1}")
        return v == 1

    def string(self) -> str:
        n = self.u32()
        try:
            return self.take(n).decode("utf-8")
        except UnicodeDecodeError as e:
            raise StateDecodeError(f"Invalid UTF-8 string at offset {self.pos - n}") from e

    def pubkey(self) -> str:
        return pubkey_str(self.take(32))

    def option(self, read):
        tag = self.u8()
        if tag == 0:
            return None
        if tag != 1:
            raise StateDecodeError(f"Invalid option tag {tag} at offset {self.pos - 1}")
        return read()


class Writer:
    def __init__(self) -> None:
        self.parts: list[bytes] = []

    def u8(self, v: int) -> "Writer":
        self.parts.append(struct.pack("<B", v))
        return self

    def u16(self, v: int) -> "Writer":
        self.parts.append(struct.pack("<H", v))
        return self

    def u32(self, v: int) -> "Writer":
        self.parts.append(struct.pack("<I", v))
        return self

    def u64(self, v: int) -> "Writer":
        self.parts.append(struct.pack("<Q", v))
        return self

    def bool(self, v: bool) -> "Writer":
        return self.u8(1 if v else 0)

    def string(self, v: str) -> "Writer":
        raw = v.encode("utf-8")
        self.u32(len(raw))
        self.parts.append(raw)
        return self

    def pubkey(self, address: str) -> "Writer":
        return self.raw(pubkey_bytes(address))

    def raw(self, chunk: bytes) -> "Writer":
        self.parts.append(chunk)
        return self

    def option(self, v, write) -> "Writer":
        if v is None:
            return self.u8(0)
        self.u8(1)
        write(v)
        return self

    def bytes(self) -> bytes:
        return b"".join(self.parts)


@dataclass(frozen=True, slots=True)
class Creator:
    address: str
    verified: bool
    share: int


@dataclass(frozen=True, slots=True)
class RecordData:
    name: str
    symbol: str
    uri: str
    seller_fee_basis_points: int
    creators: tuple[Creator, ...] | None = None

    def encode(self, w: Writer) -> Writer:
        w.string(self.name).string(self.symbol).string(self.uri).u16(self.seller_fee_basis_points)

        def _creators(cs):
            w.u32(len(cs))
            for c in cs:
                w.pubkey(c.address).bool(c.verified).u8(c.share)

        return w.option(self.creators, _creators)

    @classmethod
    def decode(cls, r: Reader) -> "RecordData":
        name, symbol, uri = r.string(), r.string(), r.string()
        fee = r.u16()

        def _creators():
            return tuple(Creator(address=r.pubkey(), verified=r.bool(), share=r.u8()) for _ in range(r.u32()))

        return cls(name=name, symbol=symbol, uri=uri, seller_fee_basis_points=fee, creators=r.option(_creators))

    def with_updates(self, **fields) -> "RecordData":
        """Partial update: fields given as None keep their current value."""
        return replace(self, **{k: v for k, v in fields.items() if v is not None})


@dataclass(frozen=True, slots=True)
class Record:
    update_authority: str
    mint: str
    data: RecordData
    primary_sale_happened: bool
    is_mutable: bool
    edition_nonce: int | None = None

    @classmethod
    def decode(cls, raw: bytes) -> "Record":
        r = Reader(raw)
        key = r.u8()
        if key != Key.METADATA_V1:
            raise StateDecodeError(f"Not a record account (key={key})")
        update_authority, mint = r.pubkey(), r.pubkey()
        data = RecordData.decode(r)
        primary_sale_happened, is_mutable = r.bool(), r.bool()
        # Older records end here; newer ones carry an edition nonce
        edition_nonce = r.option(r.u8) if r.pos < len(raw) else None
        return cls(update_authority, mint, data, primary_sale_happened, is_mutable, edition_nonce)

    def encode(self) -> bytes:
        w = Writer().u8(Key.METADATA_V1).pubkey(self.update_authority).pubkey(self.mint)
        self.data.encode(w)
        w.bool(self.primary_sale_happened).bool(self.is_mutable)
        w.option(self.edition_nonce, w.u8)
        return w.bytes()

    def needs_puffing(self) -> bool:
        d = self.data
        return (
            len(d.name) < C.MAX_NAME_LENGTH
            or len(d.uri) < C.MAX_URI_LENGTH
            or len(d.symbol) < C.MAX_SYMBOL_LENGTH
            or self.edition_nonce is None
        )


@dataclass(frozen=True, slots=True)
class MasterEdition:
    supply: int
    max_supply: int | None

    @classmethod
    def decode(cls, raw: bytes) -> "MasterEdition":
        r = Reader(raw)
        key = r.u8()
        if key != Key.MASTER_EDITION_V2:
            raise StateDecodeError(f"Not a master edition account (key={key})")
        return cls(supply=r.u64(), max_supply=r.option(r.u64))

    def encode(self) -> bytes:
        w = Writer().u8(Key.MASTER_EDITION_V2).u64(self.supply)
        return w.option(self.max_supply, w.u64).bytes()


@dataclass(frozen=True, slots=True)
class Edition:
    parent: str
    edition: int

    @classmethod
    def decode(cls, raw: bytes) -> "Edition":
        r = Reader(raw)
        key = r.u8()
        if key != Key.EDITION_V1:
            raise StateDecodeError(f"Not an edition account (key={key})")
        return cls(parent=r.pubkey(), edition=r.u64())

    def encode(self) -> bytes:
        return Writer().u8(Key.EDITION_V1).pubkey(self.parent).u64(self.edition).bytes()


@dataclass(frozen=True, slots=True)
class TokenAccount:
    mint: str
    owner: str
    amount: int

    @classmethod
    def decode(cls, raw: bytes) -> "TokenAccount":
        if len(raw) != C.TOKEN_ACCOUNT_LEN:
            raise StateDecodeError(f"Token account must be {C.TOKEN_ACCOUNT_LEN} bytes, got {len(raw)}")
        r = Reader(raw)
        return cls(mint=r.pubkey(), owner=r.pubkey(), amount=r.u64())

    def encode(self) -> bytes:
        head = Writer().pubkey(self.mint).pubkey(self.owner).u64(self.amount).bytes()
        return head + bytes(C.TOKEN_ACCOUNT_LEN - len(head))
