"""
glacierup: multipart uploads of large archives to cold-storage vaults.

Features:

- SHA-256 tree hashes over 1 MiB leaves, per part and for the whole archive.
- Sequential or bounded-concurrent part uploads driven by one state machine.
- Retry with exponential backoff for throttling and transient service errors.
- Best-effort abort of the server-side upload when anything fatal happens.
- A boto3-backed Glacier storage adapter and an in-memory one for tests.

The programmatic entry point is glacierup.uploader.upload_archive; the CLI
lives in glacierup.cli (``glacierup upload`` / ``glacierup treehash``).
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "errors",
    "models",
    "treehash",
    "chunker",
    "storage",
    "uploader",
]
