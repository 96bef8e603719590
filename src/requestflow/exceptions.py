"""
requestflow base exceptions.
"""


class RequestFlowError(Exception):
    """Base exception for all requestflow errors."""
    pass


# Note: classified request failures are ApiError, defined in requestflow.errors
# next to the classifier that produces them.
# Use: from requestflow.errors import ApiError
