"""
Fallback thumbnail generation.

When no frame can be extracted from a video, a fixed SVG placeholder
(brand-blue card with a play icon) is stored instead. The output is a
constant so every fallback is byte-identical and can be recognized later.
"""

FALLBACK_EXTENSION = ".svg"
FALLBACK_CONTENT_TYPE = "image/svg+xml"
FALLBACK_WIDTH = 600
FALLBACK_HEIGHT = 400

_FALLBACK_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="600" height="400" viewBox="0 0 600 400">'
    '<rect width="600" height="400" fill="#3A57E8"/>'
    '<circle cx="300" cy="200" r="80" stroke="#fff" stroke-width="8" fill="none"/>'
    '<circle cx="300" cy="200" r="120" stroke="#fff" stroke-width="2" fill="rgba(255,255,255,0.2)"/>'
    '<polygon points="290,180 290,220 320,200" fill="#fff"/>'
    '</svg>'
).encode("utf-8")


def generate_fallback() -> bytes:
    """Return the placeholder SVG bytes. Pure and deterministic."""
    return _FALLBACK_SVG


def is_fallback_content(data: bytes) -> bool:
    return data == _FALLBACK_SVG
