class RequestGeneration:
    """
    Monotonic counter handed out to async fetches. A response is applied only
    while its token is still the latest one issued.
    """

    def __init__(self):
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def next(self) -> int:
        self._current += 1
        return self._current

    def is_current(self, token: int) -> bool:
        return token == self._current
