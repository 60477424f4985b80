"""API key services."""

from tollgate.services.keys.ledger import KeyLedger
from tollgate.services.keys.material import KeyMaterial

__all__ = ["KeyLedger", "KeyMaterial"]
