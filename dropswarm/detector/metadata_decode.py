"""
Decoder for the token-metadata program's CreateMetadataAccountV3 instruction data.

Layout (borsh, little-endian):
    u8      discriminator (33)
    string  name        (u32 length prefix + utf-8 bytes)
    string  symbol
    string  uri
    u16     seller_fee_basis_points
    option<vec<creator>>   creator = 32-byte address + bool verified + u8 share
    option<collection>     bool verified + 32-byte key
    option<uses>           u8 use_method + u64 remaining + u64 total
    bool    is_mutable
    option<collection_details>   u8 kind + u64 size

Anything that does not fit raises DecodeSkip.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from dropswarm.errors import DecodeSkip

CREATE_METADATA_ACCOUNT_V3 = 33


@dataclass(frozen=True)
class DecodedMetadata:
    name: str
    symbol: str
    uri: str
    seller_fee_basis_points: int
    is_mutable: bool
    bytes_consumed: int


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def take(self, n: int) -> bytes:
        end = self.offset + n
        if n < 0 or end > len(self.data):
            raise DecodeSkip(f"truncated at offset {self.offset} (wanted {n} bytes)")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return struct.unpack("<H", self.take(2))[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def boolean(self) -> bool:
        value = self.u8()
        if value > 1:
            raise DecodeSkip(f"invalid bool byte {value}")
        return value == 1

    def string(self) -> str:
        length = self.u32()
        try:
            return self.take(length).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeSkip("string is not valid utf-8") from exc

    def option(self) -> bool:
        return self.boolean()


def decode_create_metadata(data: bytes) -> DecodedMetadata:
    reader = _Reader(data)
    if reader.u8() != CREATE_METADATA_ACCOUNT_V3:
        raise DecodeSkip("not a CreateMetadataAccountV3 instruction")

    name = reader.string()
    symbol = reader.string()
    uri = reader.string()
    fee = reader.u16()

    if reader.option():
        for _ in range(reader.u32()):
            reader.take(32 + 1 + 1)
    if reader.option():
        reader.take(1 + 32)
    if reader.option():
        reader.take(1 + 8 + 8)

    is_mutable = reader.boolean()

    # Older instructions end before collection details.
    if reader.offset < len(data) and reader.option():
        reader.take(1 + 8)

    return DecodedMetadata(
        name=name,
        symbol=symbol,
        uri=uri,
        seller_fee_basis_points=fee,
        is_mutable=is_mutable,
        bytes_consumed=reader.offset,
    )
