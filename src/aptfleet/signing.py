"""GnuPG-backed signing of repository metadata.

The compiler only depends on the :class:`Signer` protocol; :class:`SigningService`
is the production implementation on top of python-gnupg.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Protocol

import gnupg

from aptfleet.constants import GPG_PASSPHRASE_ENV
from aptfleet.errors import KeyUnavailable, SigningError

logger = logging.getLogger(__name__)

DIGEST_ARGS = ["--digest-algo", "SHA512"]


class Signer(Protocol):
    def sign(self, payload: bytes, key_id: str) -> str: ...

    def clearsign(self, payload: bytes, key_id: str) -> str: ...

    def verify(self, payload: bytes, signature: str) -> bool: ...

    def public_key(self, key_id: str) -> str: ...


class SigningService:
    """Wraps a GnuPG keyring holding the repository signing key."""

    def __init__(self, gnupghome: Path | str | None = None, passphrase: str | None = None):
        """Open the keyring.

        Args:
            gnupghome: Keyring directory. If None, uses the gpg default (~/.gnupg)
            passphrase: Passphrase for the signing key. If None, reads APTFLEET_GPG_PASSPHRASE;
                if that is unset too, the key is expected to have no passphrase.
        """
        if gnupghome is not None:
            Path(gnupghome).mkdir(parents=True, exist_ok=True, mode=0o700)
        try:
            self.gpg = gnupg.GPG(gnupghome=str(gnupghome) if gnupghome is not None else None)
        except (OSError, ValueError) as e:
            raise KeyUnavailable(f"GnuPG is not installed or not usable: {e}") from e
        self.passphrase = passphrase if passphrase is not None else os.getenv(GPG_PASSPHRASE_ENV)

    def _secret_key(self, key_id: str) -> dict:
        keys = self.gpg.list_keys(secret=True, keys=key_id)
        if not keys:
            raise KeyUnavailable(
                f"Secret key {key_id} is not in the keyring at {self.gpg.gnupghome or '~/.gnupg'}; "
                "import it before compiling."
            )
        key = keys[0]
        expires = key.get("expires")
        if expires and int(expires) < time.time():
            raise KeyUnavailable(f"Signing key {key_id} expired at {time.ctime(int(expires))}")
        return key

    def _sign(self, payload: bytes, key_id: str, **kwargs) -> str:
        self._secret_key(key_id)
        result = self.gpg.sign(
            payload,
            keyid=key_id,
            passphrase=self.passphrase,
            extra_args=DIGEST_ARGS,
            **kwargs,
        )
        if not result:
            error_msg = f"Failed to sign with key {key_id}"
            if result.status:
                error_msg += f": {result.status}"
            if "bad passphrase" in str(result.stderr).lower():
                error_msg += f". Check the {GPG_PASSPHRASE_ENV} environment variable."
            raise SigningError(error_msg)
        return str(result)

    def sign(self, payload: bytes, key_id: str) -> str:
        """Create a detached ASCII-armored signature (Release.gpg)."""
        return self._sign(payload, key_id, detach=True)

    def clearsign(self, payload: bytes, key_id: str) -> str:
        """Create an inline clearsigned document (InRelease)."""
        return self._sign(payload, key_id, clearsign=True)

    def verify(self, payload: bytes, signature: str) -> bool:
        """Check a detached signature against its payload."""
        fd, sig_path = tempfile.mkstemp(suffix=".asc")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(signature)
            verified = self.gpg.verify_data(sig_path, payload)
        finally:
            os.unlink(sig_path)

        if not verified.valid:
            logger.warning(f"Signature verification failed: {verified.status or 'unknown status'}")
        return bool(verified.valid)

    def public_key(self, key_id: str) -> str:
        """Export the ASCII-armored public key."""
        if not self.gpg.list_keys(keys=key_id):
            raise KeyUnavailable(f"Public key {key_id} is not in the keyring")
        public_key = self.gpg.export_keys(key_id, armor=True)
        if not public_key:
            raise KeyUnavailable(f"Failed to export public key {key_id}")
        return public_key

    def import_key(self, key_data: str | bytes) -> str:
        """Import key material into the keyring, returning the first fingerprint."""
        result = self.gpg.import_keys(key_data)
        if not result.count or not result.fingerprints:
            raise SigningError(f"Failed to import key: {result.stderr}")
        return result.fingerprints[0]

    def generate_key(self, name: str, email: str, expire_date: str | int = 0) -> str:
        """Create an ed25519 signing key, returning its fingerprint."""
        input_data = self.gpg.gen_key_input(
            name_real=name,
            name_email=email,
            key_type="EDDSA",
            key_curve="ed25519",
            key_usage="sign",
            expire_date=expire_date,
            passphrase=self.passphrase or "",
            no_protection=not self.passphrase,
        )
        key = self.gpg.gen_key(input_data)
        if not key:
            raise SigningError(f"Failed to generate a signing key for {email}: {key.stderr}")
        return str(key)
