import os

import pytest

# Test directories and the layer marker each one carries
_LAYER_MARKERS = {
    "domain": pytest.mark.domain,
    "application": pytest.mark.application,
    "integration": pytest.mark.integration,
    "bdd": pytest.mark.bdd,
}


def pytest_addoption(parser):
    parser.addoption(
        "--env",
        action="store",
        default="test",
        help="Marketplace environment to run tests under",
    )


def pytest_sessionstart(session):
    """Pytest hook to run before collecting tests.

    Sets the marketplace environment and routes structlog output through the
    test configuration before any marketplace module is imported.
    """
    os.environ["MARKETPLACE_ENV"] = session.config.option.env

    from marketplace.config import Settings
    from marketplace.utils.logging import configure_logging

    configure_logging(Settings.from_env())


def pytest_collection_modifyitems(config, items):
    """Mark tests with their layer, taken from the directory they live in."""
    for item in items:
        layer = next((part for part in item.path.parts if part in _LAYER_MARKERS), None)
        if layer is None:
            continue
        item.add_marker(_LAYER_MARKERS[layer])
        # HTTP round-trips make integration tests the slow ones
        if layer == "integration" and not any(m.name == "fast" for m in item.iter_markers()):
            item.add_marker(pytest.mark.slow)


@pytest.fixture(autouse=True)
def clean_log_context():
    """Request ids bound by one test must not leak into the next one's log lines."""
    yield

    from marketplace.utils.logging import clear_context

    clear_context()
