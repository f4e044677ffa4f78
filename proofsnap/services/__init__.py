"""
Proof services: identity, ledger client and the proof coordinator.
"""

from .identity import *
from .ledger import *
from .coordinator import *
