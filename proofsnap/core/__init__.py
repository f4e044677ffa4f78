"""
Core infrastructure: errors, retry, hashing, content storage and the off-chain index.
"""

from .errors import *
from .retry import *
from .utils import *
from .storage import *
from .index import *
