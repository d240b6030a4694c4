import itertools
import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import safetrip`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from safetrip.registry.config import RegistryConfig, get_config_manager  # noqa: E402
from safetrip.registry.models import Role  # noqa: E402
from safetrip.registry.registry import DigitalIdentityRegistry  # noqa: E402


ADMIN = "admin"
REGISTRAR = "desk-1"
VERIFIER = "officer-1"
RESPONDER = "medic-1"
OUTSIDER = "mallory"


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow concurrency tests (skipped unless SAFETRIP_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('SAFETRIP_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set SAFETRIP_RUN_SLOW=1 to enable'))


def make_kyc(**overrides):
    kyc = {
        "document_type": "passport",
        "document_hash": "doc-7f3a",
        "full_name_hash": "name-19bc",
        "nationality_hash": "nat-44d0",
        "expiry_timestamp": "2099-01-01T00:00:00+00:00",
        "trust_score": 80,
        "biometric_hash": "bio-c2e1",
    }
    kyc.update(overrides)
    return kyc


def make_trip(**overrides):
    trip = {
        "itinerary_hash": "itin-5e2f",
        "planned_start": "2026-11-01T09:00:00+00:00",
        "planned_end": "2026-11-14T18:00:00+00:00",
        "purpose": "tourism",
        "group_size": 2,
        "accommodation_hash": "hotel-a81c",
    }
    trip.update(overrides)
    return trip


@pytest.fixture(autouse=True)
def _reset_config():
    """Each test starts from default configuration."""
    get_config_manager().reset()
    yield
    get_config_manager().reset()


@pytest.fixture
def config():
    return RegistryConfig()


@pytest.fixture
def registry(config):
    """Registry with one admin, a registrar, a directory verifier and a responder."""
    reg = DigitalIdentityRegistry(admins=[ADMIN], config=config)
    reg.grant_role(ADMIN, REGISTRAR, Role.REGISTRAR)
    reg.register_verifier(ADMIN, VERIFIER, "Border Police", "border_officer", "IN-DL")
    reg.grant_role(ADMIN, RESPONDER, Role.EMERGENCY)
    return reg


@pytest.fixture
def register(registry):
    """Register a fresh identity; returns its registry_id."""
    counter = itertools.count(1)

    def _register(owner=None, external_id_hash=None, **kyc_overrides):
        n = next(counter)
        owner = owner or f"tourist-{n}"
        return registry.register_identity(
            REGISTRAR,
            owner,
            external_id_hash or f"ext-{owner}",
            make_kyc(**kyc_overrides),
            make_trip(),
        )

    return _register


@pytest.fixture
def verified_id(registry, register):
    """A verified identity owned by ``tourist-v``."""
    registry_id = register(owner="tourist-v")
    registry.verify_identity(VERIFIER, registry_id)
    return registry_id
