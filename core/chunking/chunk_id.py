"""Versioned chunk identifiers.

Three identifier formats exist in stored bundles:

* ``new``: 16 hex characters, a digest of path, file hash and line range.
  This is the only format generated.
* ``legacy_v2``: ``<12 hex path hash>:<start>-<end>``.
* ``legacy_v1``: ``chunk_NNNN``, the ordinal of the chunk in its file.

Legacy formats are parsed so that old bundles stay readable.
"""

import hashlib
import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

CHUNK_ID_LENGTH = 16

_NEW = re.compile(r"^[a-f0-9]{16}$")
_LEGACY_V2 = re.compile(r"^([a-f0-9]{12}):(\d+)-(\d+)$")
_LEGACY_V1 = re.compile(r"^chunk_(\d{4,})$")


class ContentChunkId(BaseModel):
    """Content-addressed identifier."""

    model_config = ConfigDict(frozen=True)

    format: Literal["new"] = "new"
    value: str


class PathRangeChunkId(BaseModel):
    """Legacy identifier built from a path hash and a line range."""

    model_config = ConfigDict(frozen=True)

    format: Literal["legacy_v2"] = "legacy_v2"
    value: str
    path_hash: str
    start_line: int
    end_line: int


class IndexChunkId(BaseModel):
    """Legacy identifier built from the chunk ordinal."""

    model_config = ConfigDict(frozen=True)

    format: Literal["legacy_v1"] = "legacy_v1"
    value: str
    index: int


ChunkId = Annotated[
    ContentChunkId | PathRangeChunkId | IndexChunkId,
    Field(discriminator="format"),
]


def generate_chunk_id(path: str, file_sha1: str, start_line: int, end_line: int) -> str:
    """Compute the identifier of a chunk.

    Identical content at identical offsets always yields the same id, and
    the id does not depend on any other chunk of the file.

    Args:
        path: File path relative to the repository root.
        file_sha1: Content hash of the whole file.
        start_line: First line of the chunk.
        end_line: Last line of the chunk.

    Returns:
        16 lowercase hex characters.
    """
    canonical = f"{path}:{file_sha1}:{start_line}-{end_line}"
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:CHUNK_ID_LENGTH]


def parse_chunk_id(value: str) -> ChunkId:
    """Parse a stored chunk identifier into its tagged form.

    Args:
        value: Identifier as stored.

    Returns:
        ContentChunkId, PathRangeChunkId or IndexChunkId.

    Raises:
        ValueError: If the value matches no known format.
    """
    if _NEW.match(value):
        return ContentChunkId(value=value)

    match = _LEGACY_V2.match(value)
    if match:
        return PathRangeChunkId(
            value=value,
            path_hash=match.group(1),
            start_line=int(match.group(2)),
            end_line=int(match.group(3)),
        )

    match = _LEGACY_V1.match(value)
    if match:
        return IndexChunkId(value=value, index=int(match.group(1)))

    raise ValueError(f"Unrecognized chunk id: {value!r}")
