"""
BASCULE - Pytest Configuration
Fixtures partagées pour tous les tests.
"""

from pathlib import Path

import pytest
import pytest_asyncio

from tests.fakes import Harness


@pytest.fixture
def fixtures_path() -> Path:
    """Chemin vers le dossier fixtures."""
    return Path(__file__).parent.parent / "fixtures"


@pytest_asyncio.fixture
async def harness():
    """Harness fermé en fin de test (drivers, sondes, teardowns)."""
    h = Harness()
    yield h
    await h.close()
