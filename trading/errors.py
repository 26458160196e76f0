"""Scanner exception taxonomy."""

from __future__ import annotations


class ScannerError(RuntimeError):
    code = "E_SCANNER"


class CriticalScannerError(ScannerError):
    """Errors that stop the scanner and release leadership."""

    code = "E_CRITICAL"


class PersistenceError(CriticalScannerError):
    code = "E_PERSISTENCE"


class ConfigurationError(CriticalScannerError):
    code = "E_CONFIGURATION"


class InitializationError(CriticalScannerError):
    code = "E_INITIALIZATION"


class NetworkError(CriticalScannerError):
    code = "E_NETWORK"


class ExchangeRejectionError(ScannerError):
    """Expected refusal from the exchange side (filters, balance, symbol halted)."""

    code = "E_EXCHANGE_REJECTED"


class OptionalDataError(ScannerError):
    """Optional input (regime, sentiment, strategy feed) could not be refreshed."""

    code = "E_OPTIONAL_DATA"


class LeadershipLostError(ScannerError):
    code = "E_LEADERSHIP_LOST"
