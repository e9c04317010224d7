"""Common test fixtures for medi."""

import pytest

from medi.config import config
from medi.observability import metrics
from medi.services.index_coordinator import IndexCoordinator
from medi.services.note_service import NoteService
from medi.storage.note_store import NoteStore
from medi.storage.search_index import SearchIndex


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point the global config at a temporary directory (auto-restored)."""
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "database_path", tmp_path / "store.db")
    monkeypatch.setattr(config, "index_path", tmp_path / "index.db")
    monkeypatch.setattr(config, "bulk_delta_threshold", 50)
    monkeypatch.setattr(config, "busy_timeout", 10.0)
    yield config


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def note_store(test_config):
    """A canonical store in the temporary directory."""
    store = NoteStore()
    yield store
    store.close()


@pytest.fixture
def search_index(test_config):
    """A search index in the temporary directory."""
    index = SearchIndex()
    yield index
    index.close()


@pytest.fixture
def coordinator(note_store, search_index):
    return IndexCoordinator(note_store, search_index)


@pytest.fixture
def note_service(note_store, search_index):
    """A NoteService over the temporary store and index."""
    yield NoteService(store=note_store, index=search_index)


@pytest.fixture
def other_service(test_config):
    """A second, independent NoteService on the same files.

    Stands in for another process invoking medi against the same store.
    """
    service = NoteService(store=NoteStore(), index=SearchIndex())
    yield service
    service.close()
