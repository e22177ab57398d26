"""kaiproof.artifact

SVG artifact handling: the hash-normalized form of a sigil SVG and the
``<metadata id="kai-proof">`` block that carries the proof bundle.

The artifact hash strips every proof-metadata block and normalizes line
endings, so embedding (or re-embedding) a bundle never changes ``svgHash``.
Embedding therefore works on the SVG text directly; re-serializing through
an XML library would rewrite attributes and whitespace and break the hash.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from lxml import etree

from kaiproof.digest import sha256_hex
from kaiproof.errors import ArtifactHashMismatch
from kaiproof.result import Malformed, MissingField, Ok, ParseResult

logger = logging.getLogger(__name__)

PROOF_METADATA_ID = "kai-proof"
SVG_NS = "http://www.w3.org/2000/svg"

_PROOF_METADATA_RE = re.compile(
    r"<metadata[^>]*id=[\"']" + re.escape(PROOF_METADATA_ID) + r"[\"'][^>]*>[\s\S]*?</metadata>",
    re.IGNORECASE,
)
_CLOSING_SVG_RE = re.compile(r"</svg\s*>(?![\s\S]*</svg\s*>)", re.IGNORECASE)


def strip_proof_metadata(svg_text: str) -> str:
    return _PROOF_METADATA_RE.sub("", svg_text)


def normalize_svg_for_hash(svg_text: str) -> str:
    """Remove proof metadata and convert CRLF / CR line endings to LF."""

    return re.sub(r"\r\n?", "\n", strip_proof_metadata(svg_text))


def hash_svg_text(svg_text: str) -> str:
    return sha256_hex(normalize_svg_for_hash(svg_text))


def assert_svg_hash(svg_text: str, claimed: str) -> str:
    actual = hash_svg_text(svg_text)
    if actual != str(claimed or "").lower():
        raise ArtifactHashMismatch(
            "svgHash does not match the artifact",
            expected=claimed,
            actual=actual,
        )
    return actual


def _metadata_block(payload: Any) -> str:
    body = json.dumps(payload, indent=2, ensure_ascii=False)
    # A literal "]]>" would terminate the CDATA section early.
    body = body.replace("]]>", "]]]]><![CDATA[>")
    return (
        f'<metadata id="{PROOF_METADATA_ID}" data-type="application/json">'
        f"<![CDATA[{body}]]></metadata>"
    )


def embed_proof_metadata(svg_text: str, payload: Any) -> str:
    """Return ``svg_text`` with ``payload`` as its single proof-metadata block."""

    stripped = strip_proof_metadata(svg_text)
    m = _CLOSING_SVG_RE.search(stripped)
    if not m:
        raise ValueError("SVG text has no closing </svg> tag")
    return stripped[: m.start()] + _metadata_block(payload) + stripped[m.start():]


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _safe_parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False, recover=False)


def _find_proof_element(root: Any) -> Optional[Any]:
    for el in root.iter():
        if not isinstance(el.tag, str):
            continue
        if etree.QName(el).localname == "metadata" and el.get("id") == PROOF_METADATA_ID:
            return el
    return None


def extract_proof_metadata(svg_text: str) -> ParseResult[Any]:
    """Parse the JSON carried by the proof-metadata block.

    Returns ``MissingField("metadata#kai-proof")`` when the SVG has no proof
    block and ``Malformed`` when the SVG or the JSON cannot be parsed.
    """

    try:
        root = etree.fromstring(svg_text.encode("utf-8"), parser=_safe_parser())
    except etree.XMLSyntaxError as ex:
        return Malformed(f"SVG is not well-formed XML: {ex}")

    if etree.QName(root).localname != "svg":
        return Malformed("document root is not <svg>")

    el = _find_proof_element(root)
    if el is None:
        return MissingField(f"metadata#{PROOF_METADATA_ID}")

    text = (el.text or "").strip()
    if not text:
        return Malformed("proof metadata block is empty")
    try:
        return Ok(json.loads(text))
    except json.JSONDecodeError as ex:
        logger.debug("proof metadata is not JSON: %s", ex)
        return Malformed(f"proof metadata is not JSON: {ex.msg}")
