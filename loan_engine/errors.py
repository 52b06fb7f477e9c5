"""Exceptions raised by the loan engine.

Every failure of the engine is local and recoverable; callers catch
``LoanEngineError`` (or one of its three categories) and report it.
"""


class LoanEngineError(Exception):
    """Base exception for the loan engine"""

    pass


class InvalidLoanError(LoanEngineError, ValueError):
    """Loan parameters or a payment event are invalid on their own.

    Non-positive principal or term, negative rate, a payment that can never
    amortize the principal, a paid-at timestamp in the future, and so on.
    Rejected before any schedule is produced, never clamped.
    """

    pass


class ConvergenceError(LoanEngineError):
    """The rate solver found no root inside its bracket or ran out of iterations.

    The inputs may be individually valid but jointly infeasible.
    """

    pass


class ScheduleConflictError(LoanEngineError):
    """The schedule no longer matches the loan it is being reconciled against.

    The caller must reload or regenerate the schedule and retry.
    """

    pass
