"""Shared test fixtures and configuration for backend tests."""
import os
from pathlib import Path

# Point the module-level app at in-memory databases before it is imported.
os.environ.setdefault(
    "LOCALBIZ_SETTINGS", str(Path(__file__).parent / "localbiz.test.settings.yaml")
)

import pytest
from fastapi.testclient import TestClient

from app.chat.schemas import IdentityKind
from app.config import AppSettings, StorageSettings
from app.main import create_app


@pytest.fixture
def settings():
    """Settings with every database in memory."""
    return AppSettings(
        storage=StorageSettings(
            messages_db=":memory:",
            directory_db=":memory:",
            credentials_db=":memory:",
        )
    )


@pytest.fixture
def chat_app(settings):
    """A fresh application (and relay) per test, seeded with two businesses.

    B1 is owned by O1, B2 by O2.
    """
    application = create_app(settings)
    directory = application.state.directory
    directory.register("B1", "Corner Bakery", owner_id="O1")
    directory.register("B2", "Bike Repair", owner_id="O2")
    yield application
    application.state.message_store.close()
    application.state.directory.close()
    application.state.identity_resolver.close()


@pytest.fixture
def api_client(chat_app):
    """Provide a TestClient for the chat relay app.

    Used as a context manager so every WebSocket of a test shares one
    portal, i.e. one event loop, as they would under uvicorn.
    """
    with TestClient(chat_app) as client:
        yield client


@pytest.fixture
def tokens(chat_app):
    """Bearer tokens for the seeded participants, keyed by participant id."""
    resolver = chat_app.state.identity_resolver
    return {
        "V1": resolver.issue(IdentityKind.VISITOR, "V1", "Vera"),
        "V2": resolver.issue(IdentityKind.VISITOR, "V2", "Victor"),
        "O1": resolver.issue(IdentityKind.OWNER, "O1", "Olga"),
        "O2": resolver.issue(IdentityKind.OWNER, "O2", "Oscar"),
    }
