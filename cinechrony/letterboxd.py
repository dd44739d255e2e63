"""Letterboxd export and pasted-list parsing.

A Letterboxd export is a ZIP of CSV files (Settings > Data > Export your data).
Users may also upload a single CSV from that ZIP. Both end up as a
``LetterboxdExport`` holding one list of ``ExportRow`` per category.
"""

import csv
import io
import math
import re
import zipfile
from dataclasses import dataclass, field
from html import unescape
from pathlib import PurePosixPath

from .config import LETTERBOXD_EXPORT_MAX_BYTES, LETTERBOXD_IMPORT_LIMIT, PASTE_LINE_LIMIT

LETTERBOXD_USERNAME_RE = re.compile(r"^[a-z0-9_-]{2,60}$", flags=re.IGNORECASE)
RATING_MIN = 0.5
RATING_MAX = 5.0
CATEGORIES = ("watched", "ratings", "watchlist", "reviews", "favorites")
# Checked in order; the first member found wins for a category.
CATEGORY_MEMBERS = {
    "watched": ("watched.csv", "diary.csv"),
    "ratings": ("ratings.csv",),
    "watchlist": ("watchlist.csv",),
    "reviews": ("reviews.csv",),
    "favorites": ("likes/films.csv",),
}
CSV_FILENAME_CATEGORIES = {
    "watched.csv": "watched",
    "diary.csv": "watched",
    "ratings.csv": "ratings",
    "watchlist.csv": "watchlist",
    "reviews.csv": "reviews",
    "films.csv": "favorites",
}
TITLE_COLUMNS = ("name", "film name", "title")
URI_COLUMNS = ("letterboxd uri", "uri", "url")
PASTE_BULLET_RE = re.compile(r"^\s*(?:[-*•·>]+|\d{1,4}[.)])\s*")
TITLE_YEAR_PATTERNS = (
    re.compile(r"^(?P<title>.+?),\s*(?P<year>\d{4})$"),
    re.compile(r"^(?P<title>.+?)\s*\((?P<year>\d{4})\)$"),
    re.compile(r"^(?P<title>.+?)\s*\[(?P<year>\d{4})\]$"),
    re.compile(r"^(?P<title>.+?)\s+[-–—]\s+(?P<year>\d{4})$"),
)


class ParseError(ValueError):
    """Raised when an upload or pasted text holds nothing importable."""


@dataclass(frozen=True)
class ExportRow:
    title: str
    year: int | None = None
    rating: float | None = None
    review_text: str | None = None
    list_name: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class ExportList:
    name: str
    rows: list[ExportRow]


@dataclass
class LetterboxdExport:
    username: str | None = None
    watched: list[ExportRow] = field(default_factory=list)
    ratings: list[ExportRow] = field(default_factory=list)
    watchlist: list[ExportRow] = field(default_factory=list)
    reviews: list[ExportRow] = field(default_factory=list)
    favorites: list[ExportRow] = field(default_factory=list)
    lists: list[ExportList] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(len(getattr(self, name)) for name in CATEGORIES) + sum(len(row.rows) for row in self.lists)

    def counts(self) -> dict:
        return {
            **{name: len(getattr(self, name)) for name in CATEGORIES},
            "lists": len(self.lists),
            "list_items": sum(len(row.rows) for row in self.lists),
        }


def _coerce_year(value: str | int | None) -> int | None:
    if isinstance(value, int):
        return value if 1870 <= value <= 2200 else None
    raw = str(value or "").strip()
    if not raw:
        return None
    match = re.search(r"(\d{4})", raw)
    if not match:
        return None
    year = int(match.group(1))
    return year if 1870 <= year <= 2200 else None


def clamp_rating(value: str | float | None) -> float | None:
    """Parse a Letterboxd star rating, snapped to half stars within 0.5-5.

    Blank, unparsable and non-positive values mean "not rated".
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        raw = str(value).strip()
        if not raw:
            return None
        try:
            number = float(raw)
        except ValueError:
            return None
    if not math.isfinite(number) or number <= 0:
        return None
    number = round(number * 2) / 2
    return min(RATING_MAX, max(RATING_MIN, number))


def split_title_year(value: str) -> tuple[str, int | None]:
    text = " ".join(unescape(str(value or "")).split())
    if not text:
        return "", None
    for pattern in TITLE_YEAR_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        title = (match.group("title") or "").strip()
        year = _coerce_year(match.group("year"))
        if title and year is not None:
            return title, year
    return text, None


def _decode_csv_bytes(raw: bytes) -> str:
    for encoding in ("utf-8-sig", "utf-8", "latin-1"):
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ParseError("Could not decode the CSV files in this Letterboxd export.")


def _zip_member_name_case_insensitive(names: list[str], target_name: str) -> str | None:
    target = target_name.strip("/").lower()
    for name in names:
        if name.strip("/").lower() == target:
            return name
    return None


def _read_zip_text(archive: zipfile.ZipFile, member_name: str) -> str | None:
    actual_name = _zip_member_name_case_insensitive(archive.namelist(), member_name)
    if not actual_name:
        return None
    try:
        raw = archive.read(actual_name)
    except KeyError:
        return None
    return _decode_csv_bytes(raw)


def _normalized_row(row: dict) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for key, value in row.items():
        if key is None or isinstance(value, list):
            continue
        normalized[str(key).strip().lower()] = str(value or "").strip()
    return normalized


def _first_value(row: dict[str, str], columns: tuple[str, ...]) -> str:
    for column in columns:
        value = row.get(column)
        if value:
            return value
    return ""


def _row_from_csv(row: dict[str, str], *, list_name: str | None = None) -> ExportRow | None:
    raw_title = _first_value(row, TITLE_COLUMNS)
    if not raw_title:
        return None
    title, year_from_title = split_title_year(raw_title)
    if not title:
        return None
    year = _coerce_year(row.get("year")) or year_from_title
    review_text = row.get("review") or None
    return ExportRow(
        title=title,
        year=year,
        rating=clamp_rating(row.get("rating")),
        review_text=review_text,
        list_name=list_name,
        url=_first_value(row, URI_COLUMNS) or None,
    )


def _collect_rows(raw_rows, *, list_name: str | None = None) -> list[ExportRow]:
    rows: list[ExportRow] = []
    seen: set[tuple[str, int | None]] = set()
    for raw in raw_rows:
        if not isinstance(raw, dict):
            continue
        parsed = _row_from_csv(_normalized_row(raw), list_name=list_name)
        if parsed is None:
            continue
        dedupe_key = (parsed.title.lower(), parsed.year)
        if dedupe_key in seen:
            continue
        seen.add(dedupe_key)
        rows.append(parsed)
        if len(rows) >= LETTERBOXD_IMPORT_LIMIT:
            break
    return rows


def parse_category_csv(csv_text: str) -> list[ExportRow]:
    try:
        return _collect_rows(csv.DictReader(io.StringIO(csv_text)))
    except csv.Error as exc:
        raise ParseError(f"Could not read CSV: {exc}") from exc


def _list_name_from_filename(filename: str) -> str:
    stem = PurePosixPath(filename).stem
    return " ".join(stem.replace("-", " ").replace("_", " ").split())


def parse_list_csv(csv_text: str, filename: str = "") -> ExportList | None:
    """Parse one ``lists/<slug>.csv`` file.

    The file carries a metadata block (``Date,Name,Tags,URL,Description``) and
    then the entries, starting at the ``Position,...`` header row.
    """
    name = ""
    item_header: list[str] | None = None
    meta_header: list[str] | None = None
    raw_rows: list[dict] = []
    try:
        for values in csv.reader(io.StringIO(csv_text)):
            if not values or not any(cell.strip() for cell in values):
                continue
            first = values[0].strip().lower()
            if item_header is None and first == "position":
                item_header = [cell.strip() for cell in values]
                continue
            if item_header is None and meta_header is None and first == "date" and len(values) > 1:
                meta_header = [cell.strip().lower() for cell in values]
                continue
            if item_header is not None:
                raw_rows.append(dict(zip(item_header, values)))
            elif meta_header is not None and not name:
                meta = dict(zip(meta_header, values))
                name = " ".join(str(meta.get("name") or "").split())
    except csv.Error as exc:
        raise ParseError(f"Could not read list CSV: {exc}") from exc

    if item_header is None:
        return None
    name = name or _list_name_from_filename(filename)
    if not name:
        return None
    rows = _collect_rows(raw_rows, list_name=name)
    if not rows:
        return None
    return ExportList(name=name, rows=rows)


def _parse_profile_username(csv_text: str) -> str | None:
    try:
        row = next(csv.DictReader(io.StringIO(csv_text)), None)
    except csv.Error:
        return None
    if not isinstance(row, dict):
        return None
    username = _normalized_row(row).get("username", "").lower()
    if username and LETTERBOXD_USERNAME_RE.fullmatch(username):
        return username
    return None


def _is_zip_upload(data: bytes, filename: str) -> bool:
    if filename.lower().endswith(".zip"):
        return True
    return data[:4] in (b"PK\x03\x04", b"PK\x05\x06")


def _parse_export_zip(data: bytes) -> LetterboxdExport:
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ParseError("Invalid ZIP file. Please upload the Letterboxd export ZIP.") from exc

    export = LetterboxdExport()
    with archive:
        profile_csv = _read_zip_text(archive, "profile.csv")
        if profile_csv:
            export.username = _parse_profile_username(profile_csv)
        for category in CATEGORIES:
            for member in CATEGORY_MEMBERS[category]:
                text = _read_zip_text(archive, member)
                if not text:
                    continue
                rows = parse_category_csv(text)
                if rows:
                    setattr(export, category, rows)
                    break
        for member in sorted(archive.namelist()):
            path = PurePosixPath(member)
            if path.suffix.lower() != ".csv" or len(path.parts) != 2 or path.parts[0].lower() != "lists":
                continue
            parsed_list = parse_list_csv(_decode_csv_bytes(archive.read(member)), member)
            if parsed_list:
                export.lists.append(parsed_list)
    return export


def _category_for_csv(filename: str, csv_text: str) -> str:
    by_name = CSV_FILENAME_CATEGORIES.get(PurePosixPath(filename).name.lower())
    if by_name:
        return by_name
    header = csv_text.lstrip().splitlines()[0].lower() if csv_text.strip() else ""
    if header.startswith("letterboxd list export") or re.search(r"^position,", csv_text, flags=re.I | re.M):
        return "list"
    columns = {cell.strip() for cell in header.split(",")}
    if "review" in columns:
        return "reviews"
    if "rating" in columns:
        return "ratings"
    return "watched"


def _parse_export_csv(data: bytes, filename: str) -> LetterboxdExport:
    csv_text = _decode_csv_bytes(data)
    export = LetterboxdExport()
    category = _category_for_csv(filename, csv_text)
    if category == "list":
        parsed_list = parse_list_csv(csv_text, filename)
        if parsed_list:
            export.lists.append(parsed_list)
    else:
        setattr(export, category, parse_category_csv(csv_text))
    return export


def parse_export(data: bytes, filename: str) -> LetterboxdExport:
    """Parse an uploaded Letterboxd export (ZIP or single CSV)."""
    if not data:
        raise ParseError("Upload a Letterboxd export ZIP or CSV file.")
    if len(data) > LETTERBOXD_EXPORT_MAX_BYTES:
        raise ParseError("File is too large. Please upload a smaller Letterboxd export.")

    filename = str(filename or "")
    if _is_zip_upload(data, filename):
        export = _parse_export_zip(data)
    else:
        export = _parse_export_csv(data, filename)

    if export.total_rows == 0:
        raise ParseError(
            "No movies found in the export file. Use the ZIP from Settings > Data > Export your data."
        )
    return export


def parse_pasted_titles(text: str) -> list[ExportRow]:
    rows: list[ExportRow] = []
    seen: set[tuple[str, int | None]] = set()
    lines = [line for line in str(text or "").splitlines() if line.strip()]
    for line in lines[:PASTE_LINE_LIMIT]:
        cleaned = PASTE_BULLET_RE.sub("", line).strip().strip("\"'")
        title, year = split_title_year(cleaned)
        if not title:
            continue
        dedupe_key = (title.lower(), year)
        if dedupe_key in seen:
            continue
        seen.add(dedupe_key)
        rows.append(ExportRow(title=title[:500], year=year))
    if not rows:
        raise ParseError("We couldn't identify any movies in that text. Try one title per line.")
    return rows
