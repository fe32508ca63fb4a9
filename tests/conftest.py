import pytest

from prism.credentials import CredentialVault, MemoryBlobStore, SessionContext

# Real deployments use 100k rounds; tests only need the code path.
FAST_ITERATIONS = 1_000


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.prism directory"""
    home = tmp_path / "prism-home"
    monkeypatch.setenv("PRISM_HOME", str(home))
    return home


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def session():
    return SessionContext()


@pytest.fixture
def vault(blob_store, session):
    return CredentialVault(blob_store, session, iterations=FAST_ITERATIONS)
