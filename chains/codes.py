#!/usr/bin/env python3
"""Fixed bidirectional tables between chain-native codes and canonical names."""

from __future__ import annotations

from typing import Any, Dict, Hashable, Mapping, Optional

from models import UNKNOWN


class CodeTable:
    """Total mapping between raw chain codes and canonical enum names.

    Decoding an unseen raw code yields ``unknown`` instead of raising.
    Encoding an unseen canonical name falls back to ``default`` when one is
    declared, otherwise raises ValueError (a write must never guess silently).
    """

    def __init__(self, name: str, mapping: Mapping[Hashable, str], default: Optional[str] = None):
        self.name = name
        self._decode: Dict[Hashable, str] = dict(mapping)
        self._encode: Dict[str, Hashable] = {v: k for k, v in mapping.items()}
        if len(self._encode) != len(self._decode):
            raise ValueError(f"{name} table is not one-to-one")
        if default is not None and default not in self._encode:
            raise ValueError(f"{name} default {default!r} is not a canonical value")
        self.default = default

    @staticmethod
    def _normalize_raw(raw: Any) -> Any:
        # Contract calls hand back ints, numeric strings or enum-ish objects.
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
            return int(raw.strip())
        value = getattr(raw, "value", raw)
        return value

    def decode(self, raw: Any) -> str:
        key = self._normalize_raw(raw)
        try:
            return self._decode.get(key, UNKNOWN)
        except TypeError:
            return UNKNOWN

    def encode(self, name: str) -> Hashable:
        if name in self._encode:
            return self._encode[name]
        if self.default is not None:
            return self._encode[self.default]
        raise ValueError(f"Cannot encode {name!r} as {self.name}")

    def canonical_values(self):
        return tuple(self._encode)
