import pytest

from med_tutor.catalog import InMemoryCatalog
from med_tutor.config import EngineSettings
from med_tutor.models import Band, Flashcard, MicroCase, Quiz


@pytest.fixture
def tmp_db(tmp_path):
    """Provide a temporary SQLite database path for tests."""
    db_path = str(tmp_path / "test_tutor.db")
    return db_path


@pytest.fixture
def settings():
    """Default settings, ignoring any .env file in the working directory."""
    return EngineSettings(_env_file=None)


@pytest.fixture
def catalog():
    """Three domains with band B and C content; knee neighbors hip."""
    items = [
        Quiz("knee-c-1", "knee", Band.C, difficulty=0.6, title="Meniscal tear"),
        Quiz("knee-c-2", "knee", Band.C, difficulty=0.2, title="Lachman test"),
        Quiz("knee-c-3", "knee", Band.C, difficulty=0.5, title="Tibial plateau"),
        Quiz("knee-c-4", "knee", Band.C, difficulty=0.9, title="Knee dislocation"),
        MicroCase("knee-c-mc", "knee", Band.C, difficulty=0.7, title="Septic knee"),
        Flashcard("knee-c-fc", "knee", Band.C, difficulty=0.1, title="Ottawa knee rules"),
        Quiz("knee-b-1", "knee", Band.B, difficulty=0.8, title="Knee effusion"),
        Quiz("knee-b-2", "knee", Band.B, difficulty=0.1, title="Patellar tap"),
        Quiz("hip-c-1", "hip", Band.C, title="Garden classification"),
        Quiz("hip-c-2", "hip", Band.C, title="Hemiarthroplasty"),
        Quiz("hip-c-3", "hip", Band.C, title="Dislocated THR"),
        Quiz("hip-b-1", "hip", Band.B, title="Hip fracture timing"),
        Quiz("trauma-c-1", "trauma", Band.C, title="Gustilo grading"),
        Quiz("trauma-c-2", "trauma", Band.C, title="Pelvic binder"),
        Quiz("trauma-b-1", "trauma", Band.B, title="Primary survey"),
    ]
    return InMemoryCatalog(items, neighbors={"knee": ["hip"], "hip": ["knee", "trauma"]})
