"""
Helper functions for formatting data into human-readable strings.
"""

from karaokify.models.job import Job


def format_size(bytes_size: int) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(bytes_size)
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def short_job_id(job_id: str) -> str:
    """The trailing counter and pid are enough to tell jobs apart on screen."""
    parts = job_id.split("-")
    return "-".join(parts[-2:]) if len(parts) >= 3 else job_id


def describe_job(job: Job, width: int = 48) -> str:
    """One-line label for a job: its short id and a truncated source."""
    source = job.source.describe()
    if len(source) > width:
        source = "…" + source[-(width - 1) :]
    return f"{short_job_id(job.id)} {source}"
