"""Attestation service: verifies origin events and signs commitments."""

from .commitment import CommitmentSigner, commitment_hash, recover_signer
from .service import AttestationService

__all__ = [
    "AttestationService",
    "CommitmentSigner",
    "commitment_hash",
    "recover_signer",
]
