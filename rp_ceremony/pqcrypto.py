"""ML-DSA signature verification built on top of liboqs-python."""

from __future__ import annotations

import logging
from typing import Dict

LOGGER = logging.getLogger(__name__)

COSE_ALG_TO_OQS: Dict[int, str] = {
    -48: "ML-DSA-44",
    -49: "ML-DSA-65",
    -50: "ML-DSA-87",
}


class PQCSignatureSuite:
    """Lightweight wrapper around oqs.Signature with COSE mapping."""

    def __init__(self, algorithm: int):
        if algorithm not in COSE_ALG_TO_OQS:
            raise ValueError(f"Unsupported COSE algorithm: {algorithm}")
        self.algorithm = algorithm
        self.oqs_name = COSE_ALG_TO_OQS[algorithm]

    def verify(self, public_key: bytes, payload: bytes, signature: bytes) -> bool:
        # liboqs is loaded on first use so options can be issued without it
        import oqs

        with oqs.Signature(self.oqs_name) as verifier:
            valid = bool(verifier.verify(payload, signature, public_key))
        LOGGER.debug("%s signature check: %s", self.oqs_name, valid)
        return valid
