"""
Symbol checks for the patch module.

Symbol version ledger comparison and the completeness check of the
final module's external references.
"""

from .symvers import SymbolVersionEntry, SymbolVersionLedger, VersionWarning, compare, validate_final
from .completeness import CompletenessValidator, CORE_SUPPORT_SYMBOLS

__all__ = [
    'SymbolVersionEntry',
    'SymbolVersionLedger',
    'VersionWarning',
    'compare',
    'validate_final',
    'CompletenessValidator',
    'CORE_SUPPORT_SYMBOLS'
]
