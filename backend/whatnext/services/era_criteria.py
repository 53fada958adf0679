"""
era_criteria.py

Release-era admission thresholds shared by the TMDB client (hard filters on
fetch) and the curator (re-applied to manual submissions).

Older films need fewer votes to prove themselves; recent ones must clear a
much higher bar. Every film must also be at least MIN_AGE_YEARS old so its
reputation has had time to settle.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

MIN_AGE_YEARS = 2

# Runtime sanity window; catalogs under-report runtime for very old films
MIN_RUNTIME = 60
MAX_RUNTIME = 240
RUNTIME_CHECK_AFTER_YEAR = 1960


@dataclass(frozen=True)
class EraCriteria:
    label: str
    start_year: Optional[int]  # inclusive, None = open
    end_year: Optional[int]  # inclusive, None = open
    min_votes: int
    min_rating: float

    def contains(self, year: int) -> bool:
        if self.start_year is not None and year < self.start_year:
            return False
        if self.end_year is not None and year > self.end_year:
            return False
        return True


ERA_CRITERIA = (
    EraCriteria("pre-1970", None, 1969, 500, 7.0),
    EraCriteria("1970-1989", 1970, 1989, 1000, 7.0),
    EraCriteria("1990-1999", 1990, 1999, 5000, 7.0),
    EraCriteria("2000-2015", 2000, 2015, 10000, 7.2),
    EraCriteria("2016-2022", 2016, 2022, 20000, 7.5),
    EraCriteria("2023+", 2023, None, 50000, 8.0),
)


def get_era_criteria(year: int) -> EraCriteria:
    for era in ERA_CRITERIA:
        if era.contains(year):
            return era
    return ERA_CRITERIA[-1]


def extract_year(movie: Dict[str, Any]) -> Optional[int]:
    """Year from an explicit `year` field or the `release_date` prefix."""
    year = movie.get("year")
    if year:
        try:
            return int(year)
        except (TypeError, ValueError):
            return None
    release_date = movie.get("release_date") or ""
    if len(release_date) >= 4 and release_date[:4].isdigit():
        return int(release_date[:4])
    return None


@dataclass
class EraCheck:
    passed: bool
    reason_code: Optional[str] = None  # too_recent | insufficient_votes | low_rating | missing_year
    reason: Optional[str] = None
    era: Optional[EraCriteria] = None


def check_era_criteria(year: Optional[int], vote_count: Any, vote_average: Any, current_year: int) -> EraCheck:
    """Age first, then votes, then rating; the first failure wins."""
    if not year:
        return EraCheck(False, "missing_year", "No release year")

    era = get_era_criteria(year)
    age = current_year - year
    if age < MIN_AGE_YEARS:
        return EraCheck(False, "too_recent", f"Too recent ({age} years old, need {MIN_AGE_YEARS})", era)

    votes = int(vote_count or 0)
    if votes < era.min_votes:
        return EraCheck(False, "insufficient_votes", f"Insufficient votes ({votes} < {era.min_votes})", era)

    rating = float(vote_average or 0)
    if rating < era.min_rating:
        return EraCheck(False, "low_rating", f"Rating too low ({rating} < {era.min_rating})", era)

    return EraCheck(True, era=era)


def runtime_ok(year: Optional[int], runtime: Any) -> bool:
    if not year or year <= RUNTIME_CHECK_AFTER_YEAR:
        return True
    runtime = int(runtime or 0)
    return MIN_RUNTIME <= runtime <= MAX_RUNTIME
