PROGRAM_ERRORS = {
    6000: ("InvalidAmount", "Invalid amount - must be greater than zero"),
    6001: ("AbortedComputation", "Computation aborted - MPC verification failed"),
    6002: ("InsufficientLiquidity", "Insufficient liquidity in pool"),
    6003: ("BorrowNotApproved", "Borrow not approved - health factor too low"),
    6004: ("WithdrawNotApproved", "Withdrawal not approved - would violate health factor"),
    6005: ("MathOverflow", "Math overflow"),
    6006: ("ClusterNotSet", "Cluster not set"),
    6007: ("InvalidMint", "Invalid Token Mint"),
    6008: ("Unauthorized", "Unauthorized"),
}


class ShadowLendError(Exception):
    pass


class EncodingError(ShadowLendError):
    pass


class UnknownOperation(EncodingError):
    pass


class MalformedInstruction(EncodingError):
    pass


class InvalidArgument(EncodingError):
    pass


class CryptoError(ShadowLendError):
    pass


class InvalidPublicKey(CryptoError):
    pass


class DecryptionMismatch(CryptoError):
    pass


class AddressDerivationFailed(ShadowLendError):
    pass


class StateError(ShadowLendError):
    pass


class MalformedAccount(StateError):
    pass


class NonceRegression(StateError):
    def __init__(self, obligation, seen, observed):
        super().__init__(f"nonce for {obligation} went from {seen} to {observed}")
        self.obligation = obligation
        self.seen = seen
        self.observed = observed


class LifecycleError(ShadowLendError):
    pass


class ObligationBusy(LifecycleError):
    pass


class StaleNonce(LifecycleError):
    pass


class LedgerError(ShadowLendError):
    def __init__(self, message, raw=None):
        super().__init__(message)
        self.raw = raw


class ProgramError(LedgerError):
    """Custom error raised by the lending program, kept with its own code and name."""

    def __init__(self, code, raw=None):
        self.code = code
        self.name, self.msg = PROGRAM_ERRORS.get(code, ("Custom", f"custom program error {code}"))
        super().__init__(f"{self.name} ({code}): {self.msg}", raw)


class ConfigError(ShadowLendError):
    pass


def extract_error(j, fallback="unknown error"):
    if not j:
        return fallback
    err = j.get('error', fallback)
    if isinstance(err, dict):
        message = err.get('message', '')
        code = err.get('code')
        if code is not None:
            return f"{code}: {message}" if message else str(code)
        return message or fallback
    return str(err)


def program_error_from(err):
    """Map a transaction error object to a LedgerError.

    Custom program codes look like {"InstructionError": [0, {"Custom": 6003}]}.
    """
    if isinstance(err, dict) and "InstructionError" in err:
        detail = err["InstructionError"]
        if isinstance(detail, list) and len(detail) == 2:
            inner = detail[1]
            if isinstance(inner, dict) and "Custom" in inner:
                return ProgramError(int(inner["Custom"]), err)
            return LedgerError(f"instruction {detail[0]} failed: {inner}", err)
    return LedgerError(f"transaction failed: {err}", err)
