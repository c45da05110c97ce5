"""
impact_pool/catalog.py — The curated library list.

The catalog is maintained outside this engine (admin screens, spreadsheets)
and handed over as a CSV with one row per library:

    owner,name,category,npm_package,eligibility_adjustment,approved_at

Only ``owner`` and ``name`` are required. ``eligibility_adjustment`` defaults
to 1.0 and must lie in [0, 1]; ``approved_at`` is an ISO date used for
mid-quarter proration.
"""

import csv
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Library:
    """One curated open-source library eligible for funding."""

    owner: str
    name: str
    category: str = ""
    npm_package: Optional[str] = None
    eligibility_adjustment: float = 1.0
    approved_at: Optional[date] = None

    def __post_init__(self) -> None:
        if not self.owner or not self.name:
            raise ValueError("Library requires both owner and name")
        if not 0.0 <= self.eligibility_adjustment <= 1.0:
            raise ValueError(
                f"eligibility_adjustment for {self.owner}/{self.name} must be "
                f"within [0, 1], got {self.eligibility_adjustment}"
            )

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def package_name(self) -> str:
        """npm package to query; defaults to the repository name."""
        return self.npm_package or self.name


def _parse_date(value: str) -> Optional[date]:
    value = (value or "").strip()
    if not value:
        return None
    return date.fromisoformat(value[:10])


def load_libraries(csv_path: str) -> list[Library]:
    """Read the library catalog from *csv_path*.

    Rows that fail validation are logged at WARNING and skipped; duplicate
    ``owner/name`` keys keep the first occurrence.

    Returns:
        List of Library objects in file order.

    Raises:
        FileNotFoundError: If the catalog does not exist.
    """
    libraries: list[Library] = []
    seen: set[str] = set()

    with open(csv_path, newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        for line_no, row in enumerate(reader, start=2):
            try:
                adjustment = (row.get("eligibility_adjustment") or "").strip()
                library = Library(
                    owner=(row.get("owner") or "").strip(),
                    name=(row.get("name") or "").strip(),
                    category=(row.get("category") or "").strip(),
                    npm_package=(row.get("npm_package") or "").strip() or None,
                    eligibility_adjustment=float(adjustment) if adjustment else 1.0,
                    approved_at=_parse_date(row.get("approved_at") or ""),
                )
            except ValueError as exc:
                logger.warning("Skipping catalog row %d in %s: %s", line_no, csv_path, exc)
                continue

            if library.key in seen:
                logger.warning("Duplicate catalog entry %s at row %d — ignored", library.key, line_no)
                continue
            seen.add(library.key)
            libraries.append(library)

    logger.info("Loaded %d libraries from %s", len(libraries), csv_path)
    return libraries
