from __future__ import annotations

import argparse
import json as _json
import logging
import signal
import sys
import threading
from typing import List, Optional

from .chunker import iter_parts
from .config import RetryPolicy, UploadConfig, parse_size, validate_part_size
from .errors import GlacierUpError, UploadError
from .models import PartResult, UploadResult, to_hex
from .storage import MemoryStorage, StorageClient
from .treehash import combine, leaf_hashes, tree_hash_file
from .uploader import ArchiveUploader


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _make_storage(args) -> StorageClient:
    if args.dry_run:
        return MemoryStorage()
    # Imported lazily so --dry-run and treehash work without AWS configuration.
    from .glacier import GlacierStorage

    return GlacierStorage(
        account_id=args.account_id,
        archive_description=args.description,
        region_name=args.region,
        profile_name=args.profile,
    )


def cmd_upload(
    archive: str,
    vault: str,
    *,
    storage: StorageClient,
    config: UploadConfig,
    as_json: bool = False,
    quiet: bool = False,
    cancel: Optional[threading.Event] = None,
) -> UploadResult:
    """Upload one archive to a vault.

    Args:
        archive: Path to the archive file.
        vault: Destination vault name.
        storage: Storage collaborator to talk to.
        config: Part size, concurrency and retry budget.
        as_json: When True, print the result as JSON.
        quiet: Suppress per-part progress lines.
        cancel: Event that stops dispatching new parts when set.

    Raises:
        UploadError: If the upload failed; the server-side upload has been aborted.
    """

    def _progress(res: PartResult) -> None:
        if not quiet and not as_json:
            print(f"  part {res.index + 1}: {res.byte_range.content_range()} {res.tree_hash_hex} (attempts={res.attempts})", flush=True)

    if not quiet and not as_json:
        print(f" Uploading {archive} to vault {vault} (part size {config.part_size}, concurrency {config.concurrency})...", flush=True)
    uploader = ArchiveUploader(storage, config, on_part=_progress)
    result = uploader.upload(archive, vault, cancel=cancel)
    if as_json:
        print(
            _json.dumps(
                {
                    "archiveId": result.archive_id,
                    "location": result.location,
                    "checksum": result.checksum,
                    "uploadId": result.upload_id,
                    "archiveSize": result.archive_length,
                    "parts": result.part_count,
                }
            )
        )
    else:
        print(f"Archive ID: {result.archive_id}")
        print(f"  Location: {result.location}")
        print(f"  Checksum: {result.checksum}")
    return result


def cmd_treehash(path: str, *, part_size: Optional[int] = None) -> str:
    """Print the tree hash of a file, optionally with per-part tree hashes.

    Args:
        path: File to hash.
        part_size: When given, also list the tree hash of every part and the
            root obtained by combining them.
    """
    root = to_hex(tree_hash_file(path))
    if part_size is not None:
        validate_part_size(part_size)
        part_hashes = []
        for part in iter_parts(path, part_size):
            th = combine(leaf_hashes(part.data))
            part_hashes.append(th)
            print(f"  part {part.index + 1}: {part.byte_range.content_range()} {to_hex(th)}")
        if part_hashes:
            print(f"Combined: {to_hex(combine(part_hashes))}")
    print(f"{root}  {path}")
    return root


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        prog="glacierup",
        description="Multipart archive uploads to cold-storage vaults with SHA-256 tree hashes",
    )
    ap.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity (-v info, -vv debug)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    try:
        env_cfg = UploadConfig.from_env()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    ap_up = sub.add_parser("upload", help="Upload an archive to a vault")
    ap_up.add_argument("archive", help="Archive path")
    ap_up.add_argument("vault", help="Vault name")
    ap_up.add_argument("--part-size", type=parse_size, default=env_cfg.part_size, help="Part size, 1 MiB times a power of two (e.g. 8M, 64MiB). Default: %(default)s")
    ap_up.add_argument("--concurrency", "-j", type=int, default=env_cfg.concurrency, help="Parts uploaded in parallel; 1 uploads sequentially. Default: %(default)s")
    ap_up.add_argument("--max-attempts", type=int, default=RetryPolicy().max_attempts, help="Attempts per part for retryable errors. Default: %(default)s")
    ap_up.add_argument("--region", help="AWS region (defaults to the boto3 configuration)")
    ap_up.add_argument("--profile", help="AWS named profile")
    ap_up.add_argument("--account-id", default="-", help="Vault owner account ID (default: the credentials' account)")
    ap_up.add_argument("--description", help="Archive description stored with the archive")
    ap_up.add_argument("--dry-run", action="store_true", help="Upload to an in-memory vault that verifies tree hashes")
    ap_up.add_argument("--json", action="store_true", help="Emit JSON result")
    ap_up.add_argument("--quiet", action="store_true", help="limit outputs to the result only")

    ap_th = sub.add_parser("treehash", help="Compute the SHA-256 tree hash of a file")
    ap_th.add_argument("path", help="File path")
    ap_th.add_argument("--part-size", type=parse_size, help="Also print per-part tree hashes for this part size")

    args = ap.parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "upload":
            config = UploadConfig(
                part_size=args.part_size,
                concurrency=args.concurrency,
                retry=RetryPolicy(max_attempts=args.max_attempts),
            ).validate()
            cancel = threading.Event()
            previous = None
            # Ctrl-C stops dispatching new parts; in-flight parts finish, then the upload is aborted.
            if threading.current_thread() is threading.main_thread():
                previous = signal.signal(signal.SIGINT, lambda _sig, _frm: cancel.set())
            try:
                cmd_upload(
                    args.archive,
                    args.vault,
                    storage=_make_storage(args),
                    config=config,
                    as_json=args.json,
                    quiet=args.quiet,
                    cancel=cancel,
                )
            finally:
                if previous is not None:
                    signal.signal(signal.SIGINT, previous)
        elif args.cmd == "treehash":
            cmd_treehash(args.path, part_size=args.part_size)
        else:
            raise RuntimeError("Unknown command")
    except UploadError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except (GlacierUpError, ValueError, RuntimeError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
