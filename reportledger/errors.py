class ReportLedgerError(Exception):
    pass


class ConfigurationError(ReportLedgerError):
    pass


class NoTestFoundError(ReportLedgerError):
    pass


class OldReportsError(ReportLedgerError):
    pass


class StylesheetNotFoundError(ReportLedgerError):
    pass


class ConversionError(ReportLedgerError):
    pass


class AggregateMergeError(ReportLedgerError):
    pass


class ChannelError(ReportLedgerError):
    pass


# Errors allowed to cross the node channel, looked up by class name on the way back.
REMOTE_ERRORS: dict[str, type[ReportLedgerError]] = {
    error.__name__: error
    for error in (
        ConfigurationError,
        NoTestFoundError,
        OldReportsError,
        StylesheetNotFoundError,
        ConversionError,
        ChannelError,
    )
}
