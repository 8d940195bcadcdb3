def bytes(num: float) -> str:
    """
    Get human readable bytes string for bytes
    Example: (1024*5) -> 5.00 KB | (1024*1024*5) -> 5.00 MB
    """
    for unit in ("", "K", "M"):
        if abs(num) < 1024.0:
            return f"{num:3.2f} {unit}B"
        num /= 1024.0
    return f"{num:.2f} GB"


def duration(ms: float) -> str:
    """
    Get a readable duration for milliseconds
    Example: 3723000 -> 1h 2m 3s | 0 -> 0s
    """
    seconds = int(ms // 1000)
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    parts = [f"{value}{unit}" for value, unit in ((days, "d"), (hours, "h"), (minutes, "m")) if value]
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)
