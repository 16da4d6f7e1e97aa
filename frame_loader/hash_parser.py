"""Parse a LIRE/Solr hash document into frame records.

Expected shape::

    <add>
      <doc>
        <field name="id">12.34</field>
        <field name="cl_hi">...</field>
        <field name="cl_ha">3ef d3c 2cc ...</field>
      </doc>
      ...
    </add>
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from bs4 import BeautifulSoup
from lxml import etree

from .errors import HashParseError


@dataclass(frozen=True)
class FrameHashRecord:
    time: float
    structural_hash: str
    histogram_hash: str


def _parse_time(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"non-finite time {text!r}")
    return value


# document field name -> (record attribute, converter)
FIELD_SCHEMA: Dict[str, Tuple[str, Callable[[str], object]]] = {
    "id": ("time", _parse_time),
    "cl_hi": ("structural_hash", str.strip),
    "cl_ha": ("histogram_hash", str.strip),
}


def _parse_doc(doc, position: int) -> FrameHashRecord:
    values: Dict[str, object] = {}
    for field in doc.find_all("field", recursive=False):
        spec = FIELD_SCHEMA.get(field.get("name"))
        if spec is None:
            continue
        attr, convert = spec
        text = field.get_text()
        try:
            values[attr] = convert(text)
        except ValueError as e:
            raise HashParseError(
                f"doc #{position}: bad value {text[:40]!r} for {field.get('name')!r}"
            ) from e

    missing = [name for name, (attr, _) in FIELD_SCHEMA.items() if attr not in values]
    if missing:
        raise HashParseError(f"doc #{position}: missing field(s) {', '.join(missing)}")
    if not values["structural_hash"]:
        raise HashParseError(f"doc #{position}: empty cl_hi")
    return FrameHashRecord(**values)


def _check_well_formed(document: bytes | str) -> None:
    """Raise ``HashParseError`` unless ``document`` is complete, well-formed XML.

    bs4's xml builder recovers from errors, so a document cut off between two
    ``doc`` elements would otherwise load as a shorter, valid-looking one.
    """
    data = document.encode("utf-8") if isinstance(document, str) else document
    parser = etree.XMLParser(recover=False, resolve_entities=False, no_network=True)
    try:
        etree.fromstring(data, parser)
    except etree.XMLSyntaxError as e:
        raise HashParseError(f"hash document is not well-formed XML: {e}") from e


def parse_hash_document(document: bytes | str) -> List[FrameHashRecord]:
    """Return every frame record of ``document``, sorted by time."""
    if not document or not document.strip():
        raise HashParseError("empty hash document")
    _check_well_formed(document)
    soup = BeautifulSoup(document, "xml")
    root = next(iter(soup.find_all(True, recursive=False)), None)
    if root is None:
        raise HashParseError("hash document has no root element")

    records = [_parse_doc(doc, i) for i, doc in enumerate(root.find_all("doc", recursive=False))]
    records.sort(key=lambda r: r.time)
    return records
