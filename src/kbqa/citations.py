"""Citation extraction and renumbering.

Retrieval backends describe "where this chunk came from" in several
shapes (nested S3 location, bare URI, connector-specific URL, plain
mappings with camelCase or snake_case keys). Each shape has a small
adapter below; ``extract`` tries them in order and everything after it
works on ``RetrievedChunk`` only.

Numbering: the model cites chunks by pipeline-local index (first chunk
supplied is ``[1]``). Users see documents by their position in the
catalog, so answers are renumbered through a ``CitationMapping``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from typing import Any
from urllib.parse import urlparse

import structlog

from .errors import CitationProcessingError
from .models import CatalogEntry, NumberedReference, RetrievedChunk, SourceLocation

log = structlog.get_logger()

CitationMapping = dict[int, int]

# [3] or [1, 4]
_MARKER = re.compile(r"\[(\d+(?:\s*,\s*\d+)*)\]")
_NUMBER = re.compile(r"\d+")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])(\s+)")
_TRAILING_PUNCT = re.compile(r"^(.*?)([.!?]+)$", re.DOTALL)

# Inject a marker after every Nth sentence (and always after the last one)
INJECT_EVERY = 3

_CONNECTOR_LOCATIONS = {
    "webLocation": "WEB",
    "web_location": "WEB",
    "confluenceLocation": "CONFLUENCE",
    "confluence_location": "CONFLUENCE",
    "sharePointLocation": "SHAREPOINT",
    "share_point_location": "SHAREPOINT",
    "salesforceLocation": "SALESFORCE",
    "salesforce_location": "SALESFORCE",
    "kendraDocumentLocation": "KENDRA",
    "kendra_document_location": "KENDRA",
}


def _field(record: Any, *names: str) -> Any:
    """First non-None attribute or key among ``names``."""
    if record is None:
        return None
    for name in names:
        if isinstance(record, Mapping):
            value = record.get(name)
        else:
            value = getattr(record, name, None)
        if value is not None:
            return value
    return None


def _parse_s3_uri(uri: str) -> tuple[str | None, str | None]:
    parsed = urlparse(uri)
    if parsed.scheme != "s3":
        return None, None
    return parsed.netloc or None, parsed.path.lstrip("/") or None


# ----------------------------------------------------------------------
# Location adapters: raw location -> SourceLocation | None
# ----------------------------------------------------------------------


def _s3_location(location: Any) -> SourceLocation | None:
    s3 = _field(location, "s3Location", "s3_location")
    if s3 is None:
        return None
    uri = _field(s3, "uri")
    bucket = _field(s3, "bucket", "bucketName", "bucket_name")
    key = _field(s3, "key", "objectKey", "object_key")
    if uri and not key:
        bucket, key = _parse_s3_uri(str(uri))
    return SourceLocation(type="S3", uri=uri, bucket=bucket, key=key)


def _connector_location(location: Any) -> SourceLocation | None:
    for name, kind in _CONNECTOR_LOCATIONS.items():
        sub = _field(location, name)
        if sub is not None:
            return SourceLocation(type=kind, uri=_field(sub, "url", "uri"))
    return None


def _bucket_key(location: Any) -> SourceLocation | None:
    key = _field(location, "key")
    if key is None:
        return None
    bucket = _field(location, "bucket")
    uri = _field(location, "uri") or (f"s3://{bucket}/{key}" if bucket else None)
    return SourceLocation(type="S3", uri=uri, bucket=bucket, key=key)


def _direct_uri(location: Any) -> SourceLocation | None:
    uri = location if isinstance(location, str) else _field(location, "uri", "url")
    if not uri:
        return None
    bucket, key = _parse_s3_uri(str(uri))
    return SourceLocation(type="S3" if key else "URI", uri=str(uri), bucket=bucket, key=key)


LOCATION_ADAPTERS: tuple[Callable[[Any], SourceLocation | None], ...] = (
    _s3_location,
    _connector_location,
    _bucket_key,
    _direct_uri,
)


def parse_location(location: Any) -> SourceLocation:
    if location is None:
        return SourceLocation()
    for adapter in LOCATION_ADAPTERS:
        parsed = adapter(location)
        if parsed is not None:
            return parsed
    return SourceLocation()


def _content_text(record: Any) -> str | None:
    content = _field(record, "content")
    if content is None or isinstance(content, str):
        return content or None
    text = _field(content, "text")
    return str(text) if text else None


def _iter_references(raw_citations: Iterable[Any]) -> Iterator[Any]:
    """Flatten generated-response citations into their retrieved references."""
    for record in raw_citations:
        refs = _field(record, "retrievedReferences", "retrieved_references")
        if refs is None:
            yield record
        else:
            yield from refs


def _to_chunk(record: Any) -> RetrievedChunk:
    metadata = _field(record, "metadata")
    score = _field(record, "score", "similarity_score")
    return RetrievedChunk(
        content=_content_text(record),
        location=parse_location(_field(record, "location")),
        similarity_score=float(score) if score is not None else 0.0,
        metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
    )


def extract(raw_citations: Iterable[Any] | None) -> list[RetrievedChunk]:
    """Normalise raw retrieval / citation records into ranked chunks.

    Accepts retrieval results directly or generated-response citations
    that wrap them. Records that cannot be read are skipped. Chunks are
    ordered by score, highest first (stable for ties), and ranked from 1.
    """
    if raw_citations is None:
        return []
    try:
        records = list(_iter_references(raw_citations))
    except TypeError as exc:
        raise CitationProcessingError(f"Unreadable citation payload: {exc}") from exc

    chunks: list[RetrievedChunk] = []
    for position, record in enumerate(records, start=1):
        try:
            chunks.append(_to_chunk(record))
        except Exception:
            log.warning("citation_record_skipped", position=position, exc_info=True)

    chunks.sort(key=lambda c: c.similarity_score, reverse=True)
    return [c.model_copy(update={"rank": i}) for i, c in enumerate(chunks, start=1)]


# ----------------------------------------------------------------------
# Renumbering
# ----------------------------------------------------------------------


def _catalog_index(catalog: Sequence[CatalogEntry]) -> dict[str, int]:
    index: dict[str, int] = {}
    for entry in catalog:
        index.setdefault(entry.name, entry.position)
    return index


def _catalog_position(chunk: RetrievedChunk, index: Mapping[str, int]) -> int | None:
    for key in chunk.catalog_keys():
        if key in index:
            return index[key]
    return None


def build_mapping(
    chunks: Sequence[RetrievedChunk],
    catalog: Sequence[CatalogEntry],
) -> CitationMapping:
    """Map each pipeline-local index (1-based) to its catalog position.

    Chunks with no catalog match map to themselves.
    """
    index = _catalog_index(catalog)
    mapping: CitationMapping = {}
    for local, chunk in enumerate(chunks, start=1):
        position = _catalog_position(chunk, index)
        mapping[local] = position if position is not None else local
    return mapping


def extract_citation_numbers(text: str) -> list[int]:
    """All citation numbers in order of appearance, ``[1, 3]`` groups included."""
    numbers: list[int] = []
    for m in _MARKER.finditer(text):
        numbers.extend(int(n) for n in _NUMBER.findall(m.group(1)))
    return numbers


def remap(answer: str, mapping: Mapping[int, int]) -> str:
    """Rewrite every citation number through ``mapping`` in a single pass."""

    def _renumber(marker: re.Match[str]) -> str:
        return _NUMBER.sub(
            lambda d: str(mapping.get(int(d.group(0)), int(d.group(0)))),
            marker.group(0),
        )

    return _MARKER.sub(_renumber, answer)


def _append_marker(segment: str, number: int) -> str:
    m = _TRAILING_PUNCT.match(segment)
    if m:
        return f"{m.group(1)} [{number}]{m.group(2)}"
    return f"{segment} [{number}]"


def inject_if_missing(
    answer: str,
    chunks: Sequence[RetrievedChunk],
    mapping: Mapping[int, int],
) -> str:
    """Add catalog-numbered markers to an answer that cites nothing.

    A marker goes after every third sentence and after the last one,
    cycling through the distinct mapped numbers in chunk order. Answers
    that already carry a marker, or that have no chunks behind them,
    come back unchanged.
    """
    if not chunks or not answer.strip() or _MARKER.search(answer):
        return answer

    numbers = list(dict.fromkeys(mapping.get(i, i) for i in range(1, len(chunks) + 1)))
    body = answer.rstrip()
    tail = answer[len(body):]

    parts = _SENTENCE_BREAK.split(body)
    segments, breaks = parts[0::2], parts[1::2]

    out: list[str] = []
    cursor = 0
    for i, segment in enumerate(segments):
        is_last = i == len(segments) - 1
        if segment.strip() and ((i + 1) % INJECT_EVERY == 0 or is_last):
            segment = _append_marker(segment, numbers[cursor % len(numbers)])
            cursor += 1
        out.append(segment)
        if i < len(breaks):
            out.append(breaks[i])

    log.debug("citations_injected", markers=cursor)
    return "".join(out) + tail


def _to_reference(number: int, chunk: RetrievedChunk) -> NumberedReference:
    return NumberedReference(
        number=number,
        title=chunk.title or chunk.filename or "Document",
        filename=chunk.filename,
        content=chunk.content,
        location=chunk.location,
        metadata=chunk.metadata,
    )


def build_references(
    answer: str,
    chunks: Sequence[RetrievedChunk],
    catalog: Sequence[CatalogEntry],
    include_unmatched: bool = False,
) -> list[NumberedReference]:
    """References for each distinct number cited in ``answer``.

    Ordered by first appearance. A number resolves to the first chunk
    whose catalog position equals it; chunks without a catalog match are
    left out unless ``include_unmatched`` is set, in which case they
    answer to their pipeline-local index.
    """
    index = _catalog_index(catalog)
    by_number: dict[int, RetrievedChunk] = {}
    for local, chunk in enumerate(chunks, start=1):
        position = _catalog_position(chunk, index)
        if position is None:
            if not include_unmatched:
                continue
            position = local
        by_number.setdefault(position, chunk)

    references: list[NumberedReference] = []
    for number in dict.fromkeys(extract_citation_numbers(answer)):
        chunk = by_number.get(number)
        if chunk is None:
            continue
        references.append(_to_reference(number, chunk))
    return references


def attribute(
    answer: str,
    chunks: Sequence[RetrievedChunk],
    catalog: Sequence[CatalogEntry],
    include_unmatched: bool = False,
) -> tuple[str, list[NumberedReference]]:
    """Remap, inject and resolve references for one answer."""
    try:
        mapping = build_mapping(chunks, catalog)
        answer = remap(answer, mapping)
        answer = inject_if_missing(answer, chunks, mapping)
        references = build_references(answer, chunks, catalog, include_unmatched)
    except Exception as exc:
        raise CitationProcessingError(f"Citation processing failed: {exc}") from exc

    log.info("citations_resolved", chunks=len(chunks), references=len(references))
    return answer, references
