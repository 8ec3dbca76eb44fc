class LedgerError(Exception):
    """Base class for errors raised by the points ledger."""


class UnknownActionType(LedgerError):
    """An action type that has no rule in the catalog; a code/config mismatch."""

    def __init__(self, action_type):
        self.action_type = action_type
        super().__init__(f"Unknown point action type: {action_type!r}")


class InvalidPointsAmount(LedgerError):
    pass


class InvalidStreakDate(LedgerError):
    def __init__(self, today, last_login_date):
        self.today = today
        self.last_login_date = last_login_date
        super().__init__(
            f"Login date {today.isoformat()} is before last recorded login {last_login_date.isoformat()}"
        )


class TransientStoreError(LedgerError):
    """The store stayed contended or unavailable after every retry."""
