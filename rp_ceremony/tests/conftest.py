from __future__ import annotations

from pathlib import Path
from typing import List
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rp_ceremony.config import CeremonySettings
from rp_ceremony.verifier import (
    AuthenticationCheck,
    AuthenticationVerification,
    RegistrationCheck,
    RegistrationVerification,
)

SECRET = "test-secret-key-must-be-long-enough-32chars!!"
SECRET2 = "rotated-key-that-is-also-long-enough-32chars!!"


class StubVerifier:
    """Verifier double that records checks and returns canned results."""

    def __init__(
        self,
        registration: RegistrationVerification | None = None,
        authentication: AuthenticationVerification | None = None,
    ) -> None:
        self.registration = registration or RegistrationVerification(
            verified=True,
            credential_id="cred-1",
            public_key="pk1",
            algorithm=-49,
            transports=["internal"],
        )
        self.authentication = authentication or AuthenticationVerification(
            verified=True, new_counter=1
        )
        self.registration_checks: List[RegistrationCheck] = []
        self.authentication_checks: List[AuthenticationCheck] = []

    async def verify_registration(self, check: RegistrationCheck) -> RegistrationVerification:
        self.registration_checks.append(check)
        return self.registration

    async def verify_authentication(
        self, check: AuthenticationCheck
    ) -> AuthenticationVerification:
        self.authentication_checks.append(check)
        return self.authentication


@pytest.fixture
def stub_verifier() -> StubVerifier:
    return StubVerifier()


@pytest.fixture
def stateless_settings(tmp_path: Path) -> CeremonySettings:
    return CeremonySettings(
        rp_id="example.com",
        rp_name="Example",
        allowed_origins=["https://example.com"],
        sealing_keys=[SECRET],
        credential_store_path=str(tmp_path / "credentials.json"),
    )


@pytest.fixture
def stateful_settings(tmp_path: Path) -> CeremonySettings:
    return CeremonySettings(
        rp_id="example.com",
        rp_name="Example",
        allowed_origins=["https://example.com"],
        challenge_store_path=str(tmp_path / "challenges.json"),
        credential_store_path=str(tmp_path / "credentials.json"),
    )
