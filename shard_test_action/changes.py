"""Files changed in the pipeline, as seen from the directory under test."""

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

from shard_test_action.errors import ChangeDetectionError

log = logging.getLogger(__name__)


async def get_changed_files(
    repo_path: Path,
    base_ref: str,
    head_ref: str = "HEAD",
) -> Sequence[str]:
    """List the files that differ between two refs below ``repo_path``.

    ``repo_path`` may be a subdirectory of a larger repository: paths are
    reported relative to it and changes outside of it are left out, which
    is what selectors and test commands running in that directory expect.

    Returns:
        Unique paths in git's order

    Raises:
        ChangeDetectionError: If a ref cannot be resolved or git fails

    """
    base = await resolve_ref(repo_path, base_ref)
    head = await resolve_ref(repo_path, head_ref)

    output = await _git(
        repo_path, "diff", "--name-only", "-z", "--relative", base, head
    )
    changed = list(dict.fromkeys(path for path in output.split("\0") if path))
    log.info("%d file(s) changed between %s and %s", len(changed), base, head)
    return changed


async def resolve_ref(repo_path: Path, ref: str) -> str:
    """Find the spelling of ``ref`` that exists in this checkout.

    Shallow CI checkouts often only carry the remote-tracking branch, so a
    bare branch name is retried as ``origin/<name>``.

    Raises:
        ChangeDetectionError: If no candidate exists

    """
    candidates = [ref]
    if not ref.startswith(("origin/", "refs/")):
        candidates.append(f"origin/{ref}")

    for candidate in candidates:
        if await ref_exists(repo_path, candidate):
            return candidate
    raise ChangeDetectionError(
        f"Cannot resolve git ref '{ref}' (tried {', '.join(candidates)})"
    )


async def ref_exists(repo_path: Path, ref: str) -> bool:
    """Whether git can verify ``ref`` as an object name."""
    try:
        await _git(repo_path, "rev-parse", "--verify", "--quiet", ref)
    except ChangeDetectionError:
        return False
    return True


async def _git(repo_path: Path, *args: str) -> str:
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=repo_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ChangeDetectionError(f"Cannot run git in {repo_path}: {e}") from e

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise ChangeDetectionError(
            f"git {args[0]} failed ({process.returncode}): "
            f"{stderr.decode(errors='replace').strip()}"
        )
    return stdout.decode()
