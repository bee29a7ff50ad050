"""
Number formatting for sequence counters.

Pure helpers shared by ``SequenceService.next()`` and the preview
operations, so a preview can never render a number differently from the
one that is eventually issued.

    format_number("M-", 42, 4, 2026)           -> "M-0042"
    format_number("TSV-{YYYY}-", 1, 3, 2026)   -> "TSV-2026-001"
"""

YEAR_PLACEHOLDER = "{YYYY}"

DEFAULT_PREFIX = ""
DEFAULT_PAD_LENGTH = 4


def has_year_placeholder(prefix: str) -> bool:
    return YEAR_PLACEHOLDER in (prefix or "")


def resolve_prefix(prefix: str, year: int) -> str:
    """Substitute the year placeholder with the four-digit ``year``."""
    return (prefix or "").replace(YEAR_PLACEHOLDER, f"{year:04d}")


def format_number(prefix: str, value: int, pad_length: int, year: int) -> str:
    """Compose the issued identifier.  Values wider than ``pad_length`` are not truncated."""
    if value < 0:
        raise ValueError(f"Sequence value must be non-negative, got {value}")
    if pad_length < 0:
        raise ValueError(f"Pad length must be non-negative, got {pad_length}")
    return f"{resolve_prefix(prefix, year)}{str(value).zfill(pad_length)}"


def needs_year_reset(
    prefix: str,
    year_reset: bool,
    current_value: int,
    last_used_year: int | None,
    current_year: int,
) -> bool:
    """
    Decide whether the next allocation restarts at 1.

    A counter resets only when it is configured to, its prefix carries the
    year placeholder, it has issued at least one number, and that number
    was issued in an earlier year than ``current_year``.
    """
    if not year_reset or not has_year_placeholder(prefix):
        return False
    if current_value <= 0 or last_used_year is None:
        return False
    return last_used_year != current_year


def next_counter_value(
    prefix: str,
    year_reset: bool,
    current_value: int,
    last_used_year: int | None,
    current_year: int,
) -> int:
    if needs_year_reset(prefix, year_reset, current_value, last_used_year, current_year):
        return 1
    return current_value + 1
