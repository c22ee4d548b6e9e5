##########################################################################################
#
# Script name: errors.py
#
# Description: Exception types raised by the relay collaborators.
#
##########################################################################################


# ****************************************************************************************
# Exceptions
# ****************************************************************************************

class RelayError(Exception):
    '''
    Base class for exceptions in this package.
    '''
    pass


class ConfigError(RelayError):
    '''
    Raised when required configuration is missing or malformed.
    '''
    pass


class FeedFetchError(RelayError):
    '''
    Raised when the feed document cannot be fetched or interpreted.
    '''
    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class StoreError(RelayError):
    '''
    Raised when the processed-post store cannot complete a read or write.
    '''
    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        self.message = f'{operation} failed: {cause}'
        super().__init__(self.message)
