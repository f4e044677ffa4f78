"""
ProofSnap - Tamper-evident Media Provenance

Hashes captured media, binds it to a creator identity, anchors the proof on
an append-only ledger and lets anyone verify it later.
"""

__version__ = "1.0.0"
__author__ = "ProofSnap Team"
__description__ = "Tamper-evident media provenance"
