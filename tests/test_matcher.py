import asyncio

import pytest

from cinechrony import tmdb
from cinechrony.letterboxd import ExportRow
from cinechrony.matcher import match_rows, normalize_title_for_match, pick_match


def _match(rows, search):
    return asyncio.run(match_rows(rows, search))


def test_exact_title_and_year_is_preferred_over_first_result(fake_search, movie):
    search = fake_search({
        "Heat": [
            movie(1, "Heat Wave", "1995-03-01"),
            movie(949, "Heat", "1995-12-15"),
        ],
    })
    [matched] = _match([ExportRow(title="Heat", year=1995)], search)
    assert matched.status == "exact"
    assert matched.selected is True
    assert matched.match.tmdb_id == 949
    assert matched.match.year == 1995
    assert matched.match.poster_url == "https://image.tmdb.org/t/p/w500/poster949.jpg"


def test_first_result_is_a_best_guess_when_nothing_is_exact(fake_search, movie):
    search = fake_search({
        "Heat": [movie(1, "Heat Wave", "1995-03-01"), movie(2, "Heat Lightning", "1934-01-01")],
    })
    [matched] = _match([ExportRow(title="Heat", year=1995)], search)
    assert matched.status == "best_guess"
    assert matched.selected is True
    assert matched.match.tmdb_id == 1


def test_year_mismatch_is_only_a_best_guess(fake_search, movie):
    search = fake_search({"Dune": [movie(841, "Dune", "1984-12-14")]})
    [matched] = _match([ExportRow(title="Dune", year=2021)], search)
    assert matched.status == "best_guess"
    assert matched.match.tmdb_id == 841


def test_title_without_year_matches_any_release(fake_search, movie):
    search = fake_search({"Dune": [movie(438631, "Dune", "2021-09-15")]})
    [matched] = _match([ExportRow(title="Dune")], search)
    assert matched.status == "exact"


def test_original_title_counts_as_exact(fake_search, movie):
    search = fake_search({
        "Amélie": [movie(194, "Amélie", "2001-04-25", original_title="Le Fabuleux Destin d'Amélie Poulain")],
        "Le Fabuleux Destin d'Amélie Poulain": [
            movie(194, "Amélie", "2001-04-25", original_title="Le Fabuleux Destin d'Amélie Poulain"),
        ],
    })
    [matched] = _match([ExportRow(title="Le Fabuleux Destin d'Amélie Poulain", year=2001)], search)
    assert matched.status == "exact"
    assert matched.match.title == "Amélie"


def test_empty_results_are_unmatched_and_unselected(fake_search):
    [matched] = _match([ExportRow(title="Nonexistent Film", year=1999)], fake_search())
    assert matched.status == "none"
    assert matched.match is None
    assert matched.selected is False


def test_search_failure_degrades_to_unmatched(fake_search, movie):
    search = fake_search({"Heat": [movie(949, "Heat", "1995-12-15")]}, fail_on=("Parasite",))
    rows = [ExportRow(title="Parasite", year=2019), ExportRow(title="Heat", year=1995)]
    matched = _match(rows, search)
    assert [m.status for m in matched] == ["none", "exact"]
    assert matched[0].selected is False


def test_one_query_per_row_in_input_order_with_year(fake_search):
    search = fake_search()
    rows = [
        ExportRow(title="Heat", year=1995),
        ExportRow(title="Parasite"),
        ExportRow(title="Heat", year=1995),
    ]
    matched = _match(rows, search)
    assert search.calls == [("Heat", 1995), ("Parasite", None), ("Heat", 1995)]
    assert [m.parsed for m in matched] == rows


def test_results_without_id_or_title_are_ignored(movie):
    row = ExportRow(title="Heat", year=1995)
    results = [{"title": "Heat"}, {"id": 5, "title": ""}, movie(949, "Heat", "1995-12-15")]
    matched = pick_match(row, results)
    assert matched.match.tmdb_id == 949


def test_normalize_title_for_match():
    assert normalize_title_for_match("Tom &amp; Jerry: The Movie!") == "tom and jerry the movie"
    assert normalize_title_for_match("  WALL·E ") == "wall e"


def test_missing_search_configuration_is_not_treated_as_no_match():
    async def unconfigured_search(query, page=1, year=None):
        raise tmdb.TMDBConfigError("TMDB_API_KEY environment variable not set.")

    with pytest.raises(tmdb.TMDBConfigError):
        _match([ExportRow(title="Heat", year=1995)], unconfigured_search)
