from __future__ import annotations

import json
import os
import secrets
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import requests
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .constants import SESSION_LIFETIME_SECONDS, SESSION_PROBE_API_VERSION

OPENSSL_SALT_MAGIC = b"Salted__"
PBKDF2_ITERATIONS = 10000
SF_ORG_ALIAS = "myJwtOrg"
DEFAULT_JWT_KEY_FILE = Path("..") / "jwt.key.enc"


class AuthenticationError(RuntimeError):
    """Raised when no usable access token can be obtained."""


@dataclass
class Session:
    access_token: str
    instance_url: str
    expires_at: float

    @classmethod
    def start(cls, access_token: str, instance_url: str, *, now: Optional[float] = None) -> "Session":
        issued = time.time() if now is None else now
        return cls(access_token, instance_url, issued + SESSION_LIFETIME_SECONDS)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def is_accepted(self, timeout: float = 15.0) -> bool:
        url = f"{self.instance_url.rstrip('/')}/services/data/{SESSION_PROBE_API_VERSION}"
        try:
            response = requests.get(url, headers=self.auth_headers(), timeout=timeout)
        except requests.RequestException:
            return False
        return response.status_code == 200


def decrypt_jwt_key(data: bytes, passphrase: str) -> str:
    """Decrypt an ``openssl enc -aes-256-cbc -pbkdf2`` key file."""
    if data[: len(OPENSSL_SALT_MAGIC)] != OPENSSL_SALT_MAGIC:
        raise AuthenticationError("Failed to decrypt JWT key: invalid OpenSSL encrypted file format")
    salt = data[8:16]
    encrypted = data[16:]
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=48,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    key_iv = kdf.derive(passphrase.encode("utf-8"))
    decryptor = Cipher(algorithms.AES(key_iv[:32]), modes.CBC(key_iv[32:48])).decryptor()
    try:
        padded = decryptor.update(encrypted) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except ValueError as exc:
        raise AuthenticationError(f"Failed to decrypt JWT key: {exc}") from exc


def _run(cmd: list, **kwargs: Any) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, check=True, **kwargs)


class JwtAuthenticator:
    """Obtains a Salesforce access token through the ``sf`` CLI JWT bearer flow."""

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        *,
        runner: Callable[..., subprocess.CompletedProcess] = _run,
        probe_timeout: float = 15.0,
    ) -> None:
        self.env = os.environ if env is None else env
        self.runner = runner
        self.probe_timeout = probe_timeout

    def _require(self, name: str, purpose: str) -> str:
        value = self.env.get(name)
        if not value:
            raise AuthenticationError(f"{name} environment variable is required{purpose}")
        return value

    def authenticate(self, session: Optional[Session] = None) -> Session:
        key_pass = self._require("KEY_PASS", " to decrypt JWT key")
        client_id = self._require("SFDC_CLIENT_ID", "")
        username = self._require("SFDC_USERNAME", "")
        login_url = self.env.get("SFDC_LOGIN_URL", "")
        instance_url = self.env.get("SF_INSTANCE_URL") or login_url

        env_token = self.env.get("SF_ACCESS_TOKEN")
        if env_token:
            candidate = Session.start(env_token, instance_url)
            if candidate.is_accepted(self.probe_timeout):
                print("Using SF_ACCESS_TOKEN from environment.")
                return candidate
            print("Provided SF_ACCESS_TOKEN was rejected; obtaining new token...")

        if session is not None:
            if session.is_expired():
                print("Cached token expired; obtaining new token...")
            elif session.is_accepted(self.probe_timeout):
                print("Reusing cached access token.")
                return session
            else:
                print("Cached access token rejected; obtaining new token...")

        key_path = Path(self.env.get("SFDC_JWT_KEY_FILE") or DEFAULT_JWT_KEY_FILE)
        try:
            encrypted = key_path.read_bytes()
        except OSError as exc:
            raise AuthenticationError(f"Failed to read JWT key {key_path}: {exc}") from exc
        private_key = decrypt_jwt_key(encrypted, key_pass)
        self._login(private_key, client_id=client_id, username=username, login_url=login_url)
        return self._display(fallback_instance_url=instance_url)

    def _login(self, private_key: str, *, client_id: str, username: str, login_url: str) -> None:
        tmp_dir = Path.cwd() / "tmp"
        tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, raw_path = tempfile.mkstemp(prefix="jwt_", suffix=".key", dir=tmp_dir)
        key_file = Path(raw_path)
        try:
            os.chmod(key_file, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(private_key)
            cmd = [
                "sf",
                "org",
                "login",
                "jwt",
                "--client-id",
                client_id,
                "--jwt-key-file",
                str(key_file),
                "--username",
                username,
                "--alias",
                SF_ORG_ALIAS,
                "--set-default",
            ]
            if login_url:
                cmd.extend(["--instance-url", login_url])
            try:
                self.runner(cmd)
            except FileNotFoundError as exc:
                raise AuthenticationError("sf CLI is required for JWT login but was not found on PATH.") from exc
            except subprocess.CalledProcessError as exc:
                raise AuthenticationError(f"sf org login jwt failed with exit code {exc.returncode}") from exc
        finally:
            if key_file.exists():
                # Scrub key material before unlinking.
                key_file.write_bytes(secrets.token_bytes(max(len(private_key), 1)))
                key_file.unlink()

    def _display(self, *, fallback_instance_url: str) -> Session:
        cmd = ["sf", "org", "display", "--target-org", SF_ORG_ALIAS, "--json"]
        try:
            result = self.runner(cmd, capture_output=True, text=True)
        except (FileNotFoundError, subprocess.CalledProcessError) as exc:
            raise AuthenticationError(f"sf org display failed: {exc}") from exc
        try:
            info = json.loads(result.stdout or "{}").get("result") or {}
        except json.JSONDecodeError as exc:
            raise AuthenticationError(f"Unexpected sf org display output: {exc}") from exc
        token = info.get("accessToken")
        if not token:
            raise AuthenticationError("No accessToken found in sf org display output.")
        instance_url = info.get("instanceUrl") or fallback_instance_url
        if not instance_url:
            raise AuthenticationError("No instance URL available; set SF_INSTANCE_URL or SFDC_LOGIN_URL.")
        print("Access token obtained and held in session.")
        return Session.start(token, instance_url)
