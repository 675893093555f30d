"""Packed ARGB colour helpers shared by the annotation store and artifact parsing."""

OPAQUE_BLACK = 0xFF000000


def color_hex_to_int(value: str) -> int:
    """
    Convert ``#rgb`` / ``#rrggbb`` (or longer, last 6 digits win) to packed opaque ARGB.

    Unparseable or empty input maps to opaque black.
    """
    trimmed = (value or "").strip()
    if not trimmed:
        return OPAQUE_BLACK
    h = trimmed[1:] if trimmed.startswith("#") else trimmed
    if len(h) == 3:
        normalized = "".join(c * 2 for c in h)
    elif len(h) == 6:
        normalized = h
    else:
        normalized = h[-6:]
    try:
        rgb = int(normalized, 16)
    except ValueError:
        return OPAQUE_BLACK
    return (0xFF << 24) | (rgb & 0xFFFFFF)


def color_int_to_hex(value: int) -> str:
    """Packed ARGB (signed or unsigned) to ``#rrggbb``."""
    return f"#{int(value) & 0xFFFFFF:06x}"
