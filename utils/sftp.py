"""
SFTP Client Utilities

Provides SFTP uploads with SSH key or password authentication and automatic
retries. Private-key authentication takes precedence when both credentials are
configured; having neither is a configuration error raised at construction.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import paramiko
from paramiko import SFTPClient, SSHClient

from utils.config import settings
from utils.errors import ConfigurationError, TransientError
from utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

_KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


@dataclass(frozen=True)
class SftpCredentials:
    """Connection parameters for the remote file-transfer endpoint."""

    host: str
    port: int
    username: str
    key_path: str | None = None
    key_passphrase: str | None = None
    password: str | None = None
    timeout: float = 15

    @classmethod
    def from_settings(cls) -> "SftpCredentials":
        return cls(
            host=settings.SFTP_HOST,
            port=settings.SFTP_PORT,
            username=settings.SFTP_USERNAME,
            key_path=settings.SFTP_KEY_PATH,
            key_passphrase=settings.SFTP_KEY_PASSPHRASE,
            password=settings.SFTP_PASSWORD,
            timeout=settings.SFTP_TIMEOUT,
        )

    @property
    def auth_method(self) -> str:
        if self.key_path:
            return "private_key"
        if self.password:
            return "password"
        return "none"

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: If host, username or both credentials are missing
        """
        if not self.host:
            raise ConfigurationError("SFTP_HOST is not configured")
        if not self.username:
            raise ConfigurationError("SFTP_USERNAME is not configured")
        if self.auth_method == "none":
            raise ConfigurationError(
                "Neither SFTP_KEY_PATH nor SFTP_PASSWORD is configured"
            )
        if self.key_path and not Path(self.key_path).is_file():
            raise ConfigurationError(f"SSH key file not found: {self.key_path}")


def load_private_key(key_path: str, passphrase: str | None = None) -> paramiko.PKey:
    """
    Load an RSA, Ed25519 or ECDSA private key.

    Raises:
        ConfigurationError: If the key needs a passphrase or cannot be parsed
    """
    last_error: Exception | None = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(key_path, password=passphrase)
        except paramiko.PasswordRequiredException as e:
            raise ConfigurationError(
                "SSH key requires passphrase but SFTP_KEY_PASSPHRASE not set"
            ) from e
        except paramiko.SSHException as e:
            last_error = e

    raise ConfigurationError(f"Failed to load SSH key {key_path}: {last_error}") from last_error


def get_sftp_client(credentials: SftpCredentials) -> tuple[SSHClient, SFTPClient]:
    """
    Create SFTP client connection.

    Disables host key checking for the challenge environment.

    Returns:
        Tuple of (ssh_client, sftp_client)

    Raises:
        ConfigurationError: If authentication is rejected
        TransientError: If the connection cannot be established
    """
    connect_kwargs: dict = {
        "hostname": credentials.host,
        "port": credentials.port,
        "username": credentials.username,
        "timeout": credentials.timeout,
        "auth_timeout": credentials.timeout,
        "banner_timeout": credentials.timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }

    if credentials.auth_method == "private_key":
        connect_kwargs["pkey"] = load_private_key(credentials.key_path, credentials.key_passphrase)
    else:
        logger.warning("Using password authentication for SFTP (private key not configured)")
        connect_kwargs["password"] = credentials.password

    ssh_client = SSHClient()
    ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    try:
        ssh_client.connect(**connect_kwargs)
        sftp_client = ssh_client.open_sftp()
        # Bounds every read and write of the transfer, not only the handshake
        sftp_client.get_channel().settimeout(credentials.timeout)
        return ssh_client, sftp_client

    except paramiko.AuthenticationException as e:
        ssh_client.close()
        raise ConfigurationError(f"SFTP authentication rejected for user {credentials.username}: {e}") from e
    except (paramiko.SSHException, OSError, EOFError) as e:
        ssh_client.close()
        raise TransientError(f"Failed to establish SFTP connection: {e}") from e


class SftpUploader:
    """Uploads local files into a remote directory, retrying transient failures."""

    def __init__(
        self,
        credentials: SftpCredentials | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.credentials = credentials or SftpCredentials.from_settings()
        self.credentials.validate()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

        logger.info(
            "SFTP uploader ready (host=%s, port=%d, auth=%s)",
            self.credentials.host, self.credentials.port, self.credentials.auth_method,
        )

    def upload(self, local_path: str, remote_dir: str, remote_name: str | None = None) -> str:
        """
        Upload file to SFTP server with automatic retry and directory creation.

        Args:
            local_path: Path to local file to upload
            remote_dir: Remote directory path (will be created if needed)
            remote_name: Remote filename (uses local basename if None)

        Returns:
            Remote path of the uploaded file

        Raises:
            FileNotFoundError: If local file doesn't exist
            ConfigurationError: If credentials are rejected
            TransientError: If upload fails after all retries
        """
        local_file = Path(local_path)
        if not local_file.is_file():
            raise FileNotFoundError(f"Local file not found: {local_path}")

        remote_path = f"{remote_dir.rstrip('/')}/{remote_name or local_file.name}"

        for attempt in self.retry_policy.retrying((TransientError,)):
            with attempt:
                self._upload_once(local_file, remote_dir, remote_path)

        logger.info("Uploaded to SFTP: remote_path=%s", remote_path)
        return remote_path

    def _upload_once(self, local_file: Path, remote_dir: str, remote_path: str) -> None:
        ssh_client, sftp_client = get_sftp_client(self.credentials)
        try:
            _ensure_remote_dir(sftp_client, remote_dir)
            sftp_client.put(str(local_file), remote_path)

            # Verify upload by checking remote file size
            remote_size = sftp_client.stat(remote_path).st_size
            local_size = local_file.stat().st_size
            if remote_size != local_size:
                raise TransientError(
                    f"Upload verification failed: size mismatch (local={local_size}, remote={remote_size})"
                )

        except (paramiko.SSHException, OSError, EOFError) as e:
            raise TransientError(f"SFTP upload of {remote_path} failed: {e}") from e

        finally:
            # Clean up connections
            for client in (sftp_client, ssh_client):
                try:
                    client.close()
                except Exception as e:
                    logger.debug("Error closing SFTP connection: %s", e)


def _ensure_remote_dir(sftp_client: SFTPClient, remote_dir: str) -> None:
    """
    Ensure remote directory exists, creating it recursively if needed.

    Raises:
        IOError: If directory creation fails
    """
    if not remote_dir or remote_dir == "/":
        return

    remote_dir = remote_dir.rstrip("/")

    try:
        sftp_client.stat(remote_dir)
        return
    except FileNotFoundError:
        pass

    # Create parent directories first
    parent_dir = str(Path(remote_dir).parent)
    if parent_dir not in ("/", ".") and parent_dir != remote_dir:
        _ensure_remote_dir(sftp_client, parent_dir)

    try:
        sftp_client.mkdir(remote_dir)
        logger.debug("Created remote directory: %s", remote_dir)
    except IOError as e:
        # Check if directory was created by another process
        try:
            sftp_client.stat(remote_dir)
        except FileNotFoundError:
            raise IOError(f"Failed to create remote directory {remote_dir}: {e}") from e
