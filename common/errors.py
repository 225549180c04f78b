class StoreUnavailableError(Exception):
    """The record store could not be reached; the outcome of the write is unknown."""
