"""Shared helpers for the queue services."""


def format_file_size(size_bytes: int) -> str:
    """Format a file size in bytes to a human-readable string (e.g. "1.5 MB")."""
    size_float = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < 1024.0:
            return f"{size_float:.1f} {unit}"
        size_float = size_float / 1024.0
    return f"{size_float:.1f} PB"


def progress_percent(bytes_sent: int, bytes_total: int) -> int:
    """Convert transferred bytes into an integer percentage in [0, 100].

    An unknown or zero total is treated as a denominator of 1.

    Args:
        bytes_sent: Bytes handed to the transport so far
        bytes_total: Total payload size, 0 or negative when unknown

    Returns:
        Rounded percentage
    """
    denominator = max(bytes_total, 1)
    percent = round(max(bytes_sent, 0) * 100 / denominator)
    return min(100, percent)
