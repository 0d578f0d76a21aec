"""Decoding of the image result embedded in KIE payloads.

The provider has shipped several encodings of the same "here are your
images" answer over time.  Each encoding gets its own matcher; matchers are
tried in order and the first one that yields at least one asset wins.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping

_DATA_URI_RE = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)


@dataclass(frozen=True)
class ResultAsset:
    """Either a remote URL to download or image bytes delivered inline."""

    url: str | None = None
    data: bytes | None = None
    content_type: str | None = None

    @property
    def is_inline(self) -> bool:
        return self.data is not None


Matcher = Callable[[Mapping[str, Any]], "list[ResultAsset] | None"]


def _urls_to_assets(urls: Any) -> list[ResultAsset] | None:
    if not isinstance(urls, list):
        return None
    assets = [ResultAsset(url=u) for u in urls if isinstance(u, str) and u]
    return assets or None


def match_result_json_string(payload: Mapping[str, Any]) -> list[ResultAsset] | None:
    raw = payload.get("resultJson")
    if not isinstance(raw, str) or not raw:
        return None
    try:
        decoded = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(decoded, dict):
        return None
    return _urls_to_assets(decoded.get("resultUrls"))


def match_result_json_mapping(payload: Mapping[str, Any]) -> list[ResultAsset] | None:
    raw = payload.get("resultJson")
    if not isinstance(raw, Mapping):
        return None
    return _urls_to_assets(raw.get("resultUrls"))


def match_result_urls(payload: Mapping[str, Any]) -> list[ResultAsset] | None:
    return _urls_to_assets(payload.get("resultUrls"))


def match_single_url(payload: Mapping[str, Any]) -> list[ResultAsset] | None:
    for key in ("resultUrl", "imageUrl"):
        value = payload.get(key)
        if isinstance(value, str) and value and not value.startswith("data:"):
            return [ResultAsset(url=value)]
    return None


def match_images_list(payload: Mapping[str, Any]) -> list[ResultAsset] | None:
    images = payload.get("images")
    if not isinstance(images, list):
        return None
    urls = [img.get("url") for img in images if isinstance(img, Mapping)]
    return _urls_to_assets(urls)


def _decode_data_uri(value: str) -> ResultAsset | None:
    match = _DATA_URI_RE.match(value.strip())
    if match is None:
        return None
    try:
        data = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError):
        return None
    return ResultAsset(data=data, content_type=match.group(1))


def match_inline_base64(payload: Mapping[str, Any]) -> list[ResultAsset] | None:
    b64 = payload.get("b64_json")
    if isinstance(b64, str) and b64:
        try:
            return [ResultAsset(data=base64.b64decode(b64, validate=True))]
        except (binascii.Error, ValueError):
            return None
    for key in ("imageUrl", "resultUrl", "image"):
        value = payload.get(key)
        if isinstance(value, str) and value.startswith("data:"):
            asset = _decode_data_uri(value)
            return [asset] if asset else None
    return None


RESULT_MATCHERS: tuple[Matcher, ...] = (
    match_result_json_string,
    match_result_json_mapping,
    match_result_urls,
    match_single_url,
    match_images_list,
    match_inline_base64,
)


def extract_result_assets(
    payload: Mapping[str, Any] | None,
    matchers: tuple[Matcher, ...] = RESULT_MATCHERS,
) -> list[ResultAsset]:
    """Return the assets found by the first matching encoding, or ``[]``."""
    if not payload:
        return []
    for matcher in matchers:
        assets = matcher(payload)
        if assets:
            return assets
    return []
