"""Session-wide, append-only log of upload failure messages."""

import threading


class ErrorLog:
    """Aggregate failure messages shown in the error banner.

    Entries are only appended; the user can dismiss the whole banner.
    """

    def __init__(self) -> None:
        self._entries: list[str] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, message: str) -> None:
        with self._lock:
            self._entries.append(message)

    def entries(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def dismiss(self) -> int:
        """Clear the banner.

        Returns:
            Number of entries dismissed
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count
