"""Map Bambu filament vocabulary onto the inventory's vocabulary.

The printer reports the product line (e.g. "PLA Matte", "PLA Basic") as the
tray sub-brand. The inventory stores the vendor as brand and the product line
as type, so the sub-brand becomes the type and the brand is a fixed label.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

logger = logging.getLogger(__name__)

DEFAULT_BRAND = "Bambu Lab"
UNKNOWN_TYPE = "Unknown"

# Inventory short names for product lines the printer reports verbosely
TYPE_ALIASES = MappingProxyType({"PLA Basic": "PLA"})

COLOR_TABLE_PATH = Path(__file__).resolve().parent.parent / "data" / "color_names.json"


@dataclass(frozen=True)
class FilamentName:
    brand: str
    type: str


@dataclass(frozen=True)
class ColorTable:
    """Immutable RGBA hex -> color name lookup with per-type overrides."""

    default: Mapping[str, str]
    by_type: Mapping[str, Mapping[str, str]]

    @classmethod
    def from_dict(cls, data: dict) -> "ColorTable":
        default = {_color_key(k): v for k, v in (data.get("default") or {}).items()}
        by_type = {
            keyword.lower(): MappingProxyType({_color_key(k): v for k, v in names.items()})
            for keyword, names in (data.get("by_type") or {}).items()
        }
        return cls(default=MappingProxyType(default), by_type=MappingProxyType(by_type))

    @classmethod
    def load(cls, path: Path = COLOR_TABLE_PATH, extra_path: Path | None = None) -> "ColorTable":
        """Load the bundled table, optionally merged with a user-supplied JSON file."""
        data = json.loads(path.read_text(encoding="utf-8"))
        if extra_path is not None:
            try:
                extra = json.loads(Path(extra_path).read_text(encoding="utf-8"))
                if not isinstance(extra, dict):
                    raise ValueError("expected a JSON object")
            except (OSError, ValueError) as e:
                logger.warning("Ignoring color table %s: %s", extra_path, e)
            else:
                data.setdefault("default", {}).update(extra.get("default") or {})
                for keyword, names in (extra.get("by_type") or {}).items():
                    data.setdefault("by_type", {}).setdefault(keyword, {}).update(names)
        return cls.from_dict(data)

    def lookup(self, color_hex: str, filament_type: str | None = None) -> str | None:
        key = _color_key(color_hex)
        type_lower = (filament_type or "").lower()
        for keyword, names in self.by_type.items():
            if keyword in type_lower and key in names:
                return names[key]
        return self.default.get(key)


def _color_key(color_hex: str) -> str:
    key = (color_hex or "").strip().lstrip("#").upper()
    if len(key) == 6:
        key += "FF"
    return key


def normalize(sub_brand: str | None, filament_type: str | None, brand: str = DEFAULT_BRAND) -> FilamentName:
    """Return inventory brand/type for a tray's sub-brand and filament type."""
    type_name = (sub_brand or "").strip() or (filament_type or "").strip() or UNKNOWN_TYPE
    return FilamentName(brand=brand, type=TYPE_ALIASES.get(type_name, type_name))


_default_table: ColorTable | None = None


def get_color_table() -> ColorTable:
    global _default_table
    if _default_table is None:
        _default_table = ColorTable.load()
    return _default_table


def normalize_color(color_hex: str, filament_type: str | None = None, table: ColorTable | None = None) -> str:
    """Return a human color name for an RGBA hex code, or the input unchanged."""
    table = table or get_color_table()
    return table.lookup(color_hex, filament_type) or color_hex
