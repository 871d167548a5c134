class DispatchError(Exception):
    pass


class InvalidRequestError(DispatchError):
    """Input can never be dispatched as-is (bad coordinates, unknown category, bad action)."""


class NotFoundError(DispatchError):
    pass
