import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_user_dict():
    return {
        "userId": "user-42",
        "favoriteGenres": ["Drama", "Science Fiction", "Mystery"],
        "behavioralData": {
            "completionRate": 0.9,
            "skipRate": 0.1,
            "bingePatterns": "heavy",
            "preferredShowLength": "long",
            "watchingTimes": ["night", "weekend"],
            "genreEvolution": {"Drama": 0.7, "Sci-Fi": 0.9},
        },
        "contextualCues": {
            "currentMood": "thought-provoking",
            "timeOfDay": "night",
            "dayOfWeek": "Saturday",
            "season": "winter",
            "recentActivity": ["completed series", "rated show"],
        },
    }


@pytest.fixture
def sample_content_dict():
    return {
        "tmdbId": 1399,
        "genres": ["Drama", "Sci-Fi & Fantasy", "Action & Adventure"],
        "overview": "A secret war for the future of the realm; love, battle and a hidden threat.",
        "avgRating": 8.7,
        "popularityScore": 0.95,
        "voteCount": 22000,
    }
