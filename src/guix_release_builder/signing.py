"""Attestation and codesigning of build outputs.

Signing itself is delegated to ``gpg`` and to the toolchain's
``guix-codesign``; this module decides what gets signed, where the
attestation files live in the guix.sigs checkout, and whether work already
done can be reused.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Callable, Protocol, Sequence

from .builder import (
    DETACHED_SIGS_LOCK,
    GUIX_SIGS_LOCK,
    SOURCE_LOCK,
    BuildWorkspace,
    CommandError,
    run_command,
    stream_command,
)
from .errors import MissingSignatureError, SigningError
from .models import AttestationResult, CodesignResult, Tag
from .storage import atomic_write_text

logger = logging.getLogger(__name__)

NONCODESIGNED = "noncodesigned"
ALL = "all"
_CODESIGNED_SUFFIX = "-codesigned"
_CHUNK = 1024 * 1024


class SigningGateway(Protocol):
    def attest(self, tag: Tag, output_dir: Path, signer: str) -> AttestationResult: ...

    def await_detached_signatures(self, tag: Tag, output_dir: Path, required_signers: Sequence[str]) -> bool: ...

    def codesign(self, tag: Tag, output_dir: Path) -> CodesignResult: ...


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def compute_digests(output_dir: Path, *, include_codesigned: bool) -> dict[str, str]:
    """SHA-256 of every output file keyed by its path relative to *output_dir*."""
    digests: dict[str, str] = {}
    for path in sorted(output_dir.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(output_dir)
        if not include_codesigned and relative.parts[0].endswith(_CODESIGNED_SUFFIX):
            continue
        digests[relative.as_posix()] = sha256_file(path)
    return digests


def render_sums(digests: dict[str, str]) -> str:
    """``sha256sum``-compatible listing, sorted by path."""
    return "".join(f"{digests[name]}  {name}\n" for name in sorted(digests))


def signature_present(signers_root: Path, required_signers: Sequence[str]) -> bool:
    for signer in required_signers:
        signer_dir = signers_root / signer
        if not signer_dir.is_dir() or not any(child.is_file() for child in signer_dir.rglob("*")):
            return False
    return True


def check_signing_capability(key_id: str, *, runner: Callable[..., str] = run_command) -> None:
    """Dry-run a signature with *key_id* so an unattended watcher fails fast.

    Raises:
        SigningError: If gpg cannot sign with the key.
    """
    try:
        runner(
            [
                "gpg",
                "--batch",
                "--dry-run",
                "--local-user",
                key_id,
                "--armor",
                "--sign",
                "--output",
                "/dev/null",
                "/dev/null",
            ],
            cwd=Path.cwd(),
        )
    except CommandError as exc:
        raise SigningError(f"GPG signing check failed for {key_id}: {exc.output.strip()}") from exc


class GpgSigningGateway:
    """Signs SHA256SUMS attestations with gpg and runs ``guix-codesign``."""

    def __init__(
        self,
        workspace: BuildWorkspace,
        *,
        gpg_key_id: str,
        signer_name: str,
        required_signers: Sequence[str],
        commit_attestations: bool = False,
        runner: Callable[..., str] = run_command,
        streamer: Callable[..., int] = stream_command,
    ) -> None:
        self.workspace = workspace
        self.gpg_key_id = gpg_key_id
        self.signer_name = signer_name
        self.required_signers = list(required_signers)
        self.commit_attestations = commit_attestations
        self._run = runner
        self._stream = streamer

    def _sums_path(self, tag: Tag, signer: str, kind: str) -> Path:
        return self.workspace.guix_sigs_dir / tag.version / signer / f"{kind}.SHA256SUMS"

    def _key_matches(self, fingerprint: str) -> bool:
        wanted = self.gpg_key_id.removeprefix("0x").upper()
        return bool(wanted) and fingerprint.upper().endswith(wanted)

    def verify(self, sums_path: Path, signature_path: Path) -> bool:
        """True if *signature_path* is a good signature over *sums_path* by our key."""
        if not signature_path.is_file():
            return False
        try:
            status = self._run(
                ["gpg", "--batch", "--status-fd", "1", "--verify", str(signature_path), str(sums_path)],
                cwd=sums_path.parent,
            )
        except CommandError:
            return False
        for line in status.splitlines():
            fields = line.split()
            if len(fields) >= 3 and fields[0] == "[GNUPG:]" and fields[1] in ("VALIDSIG", "GOODSIG"):
                if self._key_matches(fields[2]):
                    return True
        return False

    def _sign(self, sums_path: Path, signature_path: Path) -> None:
        try:
            self._run(
                [
                    "gpg",
                    "--batch",
                    "--yes",
                    "--local-user",
                    self.gpg_key_id,
                    "--armor",
                    "--detach-sign",
                    "--output",
                    str(signature_path),
                    str(sums_path),
                ],
                cwd=sums_path.parent,
            )
        except CommandError as exc:
            raise SigningError(f"gpg could not sign {sums_path}: {exc.output.strip()}") from exc

    def _commit(self, tag: Tag, signer: str, kind: str, paths: list[Path]) -> None:
        sigs_dir = self.workspace.guix_sigs_dir
        branch = f"{signer}-{tag.name}-{kind}-attestations"
        message = f"Add {kind} attestations by {signer} for {tag.name}"
        try:
            self._run(["git", "checkout", "-B", branch], cwd=sigs_dir)
            self._run(["git", "add", *[path.relative_to(sigs_dir).as_posix() for path in paths]], cwd=sigs_dir)
            self._run(["git", "commit", "-m", message], cwd=sigs_dir)
        except CommandError as exc:
            raise SigningError(f"could not commit attestations for {tag.name}: {exc}") from exc
        logger.info("Committed %s attestations for %s on branch %s", kind, tag.name, branch)

    def _attest_kind(self, tag: Tag, output_dir: Path, signer: str, kind: str) -> AttestationResult:
        if not output_dir.is_dir():
            raise SigningError(f"build outputs for {tag.name} not found at {output_dir}")
        digests = compute_digests(output_dir, include_codesigned=kind == ALL)
        if not digests:
            raise SigningError(f"no build outputs to attest in {output_dir}")

        sums_path = self._sums_path(tag, signer, kind)
        signature_path = sums_path.with_name(sums_path.name + ".asc")
        content = render_sums(digests)

        with self.workspace.exclusive(GUIX_SIGS_LOCK):
            if sums_path.is_file() and sums_path.read_text(encoding="utf-8") == content:
                if self.verify(sums_path, signature_path):
                    logger.info("%s attestation for %s by %s already signed; skipping", kind, tag.name, signer)
                    return AttestationResult(sums_path, signature_path, digests, skipped=True)

            atomic_write_text(sums_path, content)
            self._sign(sums_path, signature_path)
            logger.info("Signed %s attestation for %s by %s (%d files)", kind, tag.name, signer, len(digests))
            if self.commit_attestations:
                self._commit(tag, signer, kind, [sums_path, signature_path])
        return AttestationResult(sums_path, signature_path, digests)

    def attest(self, tag: Tag, output_dir: Path, signer: str) -> AttestationResult:
        return self._attest_kind(tag, output_dir, signer, NONCODESIGNED)

    def _checkout_detached(self, tag: Tag) -> bool:
        """Move the detached-sigs checkout to *tag*. Caller holds the detached-sigs lock."""
        detached = self.workspace.detached_sigs_dir
        try:
            self._run(["git", "checkout", "--force", tag.name], cwd=detached)
        except CommandError as exc:
            logger.warning("Could not check out detached signatures for %s: %s", tag.name, exc)
            return False
        return True

    def await_detached_signatures(self, tag: Tag, output_dir: Path, required_signers: Sequence[str]) -> bool:
        """Check, without waiting, whether the detached signatures for *tag* are published."""
        if not output_dir.is_dir():
            raise SigningError(f"build outputs for {tag.name} not found at {output_dir}")
        detached = self.workspace.detached_sigs_dir
        with self.workspace.exclusive(DETACHED_SIGS_LOCK):
            try:
                self._run(["git", "fetch", "--tags", "origin"], cwd=detached)
                listed = self._run(["git", "tag", "--list", tag.name], cwd=detached)
            except CommandError as exc:
                logger.warning("Could not refresh detached signatures for %s: %s", tag.name, exc)
                return False
            if tag.name not in listed.split():
                logger.debug("Detached signatures for %s not tagged yet", tag.name)
                return False
            if not self._checkout_detached(tag):
                return False
            return signature_present(detached, required_signers)

    def codesign(self, tag: Tag, output_dir: Path) -> CodesignResult:
        """Attach codesignatures, then attest to the full output set.

        The source and detached-sigs checkouts are both moved to *tag* and held
        until ``guix-codesign`` exits.

        Raises:
            MissingSignatureError: If the detached signatures for *tag* are not
                present; the output tree is left untouched.
            SigningError: If the codesigning tool or gpg fails.
        """
        detached = self.workspace.detached_sigs_dir
        with self.workspace.exclusive(SOURCE_LOCK), self.workspace.exclusive(DETACHED_SIGS_LOCK):
            if not self._checkout_detached(tag) or not signature_present(detached, self.required_signers):
                raise MissingSignatureError(f"detached signatures for {tag.name} missing in {detached}")
            if not output_dir.is_dir():
                raise SigningError(f"build outputs for {tag.name} not found at {output_dir}")
            try:
                self._run(["git", "checkout", "--force", tag.name], cwd=self.workspace.source_dir)
            except CommandError as exc:
                raise SigningError(f"could not check out sources for {tag.name}: {exc}") from exc

            log_path = self.workspace.logs_dir / f"{tag.name}-codesign.log"
            exit_code = self._stream(
                [str(self.workspace.source_dir / "contrib" / "guix" / "guix-codesign")],
                cwd=self.workspace.source_dir,
                env={
                    **self.workspace.toolchain_env(),
                    "DETACHED_SIGS_REPO": str(detached),
                },
                log_path=log_path,
            )
        if exit_code != 0:
            raise SigningError(f"guix-codesign for {tag.name} exited with {exit_code}; see {log_path}")
        attestation = self._attest_kind(tag, output_dir, self.signer_name, ALL)
        return CodesignResult(output_dir=output_dir, attestation=attestation)
