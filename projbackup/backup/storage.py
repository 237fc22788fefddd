"""
Delivery channels for status messages and backup documents.

Supports:
- TelegramSink: messages and file uploads via the Telegram Bot API
- S3Sink: off-host copy of uploaded documents in an S3 bucket
- CompositeSink: fan-out to several sinks
- NullSink: nothing configured

Delivery is best-effort: failures are logged as warnings and reported as a
False return value, never raised to the caller.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence

import boto3
import requests
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from projbackup.config import BackupConfig, BackupError


logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org'
REQUEST_TIMEOUT = 30
UPLOAD_TIMEOUT = 600

MIB = 1024 * 1024
MULTIPART_THRESHOLD = 100 * MIB
MIN_MULTIPART_CHUNK = 5 * MIB
PARTS_PER_DOCUMENT = 100


class TransportError(BackupError):
    """Raised inside a sink when a delivery attempt fails."""
    pass


class NotificationSink(ABC):
    """Best-effort status and document delivery."""

    channel_name = 'sink'

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """True when the sink has everything it needs to deliver."""

    def send_status(self, text: str) -> bool:
        """
        Send a status message.

        Args:
            text: Message text (HTML allowed)

        Returns:
            True if delivered, False if skipped or failed
        """
        if not self.enabled or not text:
            return False

        try:
            self._send_status(text)
            return True
        except (TransportError, requests.RequestException, OSError) as e:
            logger.warning(f"{self.channel_name}: failed to send message: {e}")
            return False

    def send_document(self, path, caption: str = '') -> bool:
        """
        Upload a file.

        Args:
            path: File to upload (streamed from disk)
            caption: Caption shown with the document

        Returns:
            True if delivered, False if skipped or failed
        """
        if not self.enabled:
            return False

        path = Path(path)
        if not path.is_file():
            logger.warning(f"{self.channel_name}: document does not exist: {path}")
            return False

        try:
            self._send_document(path, caption)
            return True
        except (TransportError, requests.RequestException, OSError) as e:
            logger.warning(f"{self.channel_name}: failed to send {path.name}: {e}")
            return False

    @abstractmethod
    def _send_status(self, text: str):
        pass

    @abstractmethod
    def _send_document(self, path: Path, caption: str):
        pass


class NullSink(NotificationSink):
    """Sink used when no delivery channel is configured."""

    channel_name = 'none'

    @property
    def enabled(self) -> bool:
        return False

    def _send_status(self, text: str):
        pass

    def _send_document(self, path: Path, caption: str):
        pass


class TelegramSink(NotificationSink):
    """
    Telegram Bot API sink.

    Messages go to ``sendMessage`` as JSON, documents to ``sendDocument`` as a
    multipart upload. Only HTTP 200 counts as success.
    """

    channel_name = 'telegram'

    def __init__(self, bot_token: str, chat_id: str, session: Optional[requests.Session] = None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def _url(self, method: str) -> str:
        return f"{TELEGRAM_API_URL}/bot{self.bot_token}/{method}"

    def _check(self, method: str, response: requests.Response):
        if response.status_code != 200:
            raise TransportError(
                f"Telegram API {method} failed ({response.status_code}): {response.text[:200]}"
            )

    def _send_status(self, text: str):
        payload = {
            'chat_id': self.chat_id,
            'text': text,
            'parse_mode': 'HTML',
            'disable_web_page_preview': True,
        }
        # json= takes care of escaping the message text
        response = self.session.post(self._url('sendMessage'), json=payload, timeout=REQUEST_TIMEOUT)
        self._check('sendMessage', response)

    def _send_document(self, path: Path, caption: str):
        with open(path, 'rb') as f:
            response = self.session.post(
                self._url('sendDocument'),
                data={'chat_id': self.chat_id, 'caption': caption},
                files={'document': (path.name, f)},
                timeout=UPLOAD_TIMEOUT,
            )
        self._check('sendDocument', response)


class S3Sink(NotificationSink):
    """
    Copies uploaded documents to S3.

    Object keys: {prefix}/{project}/{timestamp}/{filename}
    Status messages are not stored. Documents above MULTIPART_THRESHOLD go up
    as a multipart upload in ``chunk_size`` pieces; boto3 aborts the upload
    if a piece fails.
    """

    channel_name = 's3'

    def __init__(self, bucket_name: str, key_prefix: str = '', region: str = 'us-east-1',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 chunk_size: int = MIN_MULTIPART_CHUNK):
        """
        Initialize S3 sink.

        Args:
            bucket_name: S3 bucket name
            key_prefix: Key prefix for this run's documents
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key
            chunk_size: Multipart piece size in bytes

        Raises:
            BotoCoreError: If the client cannot be created (e.g. invalid region)
        """
        self.bucket_name = bucket_name
        self.key_prefix = key_prefix.strip('/')
        self.region = region
        self.chunk_size = max(chunk_size, MIN_MULTIPART_CHUNK)

        client_kwargs = {'region_name': region}
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key

        self.s3_client = boto3.client('s3', **client_kwargs)

    @property
    def enabled(self) -> bool:
        return bool(self.bucket_name)

    def object_key(self, path: Path) -> str:
        if self.key_prefix:
            return f"{self.key_prefix}/{path.name}"
        return path.name

    def _send_status(self, text: str):
        pass

    def send_status(self, text: str) -> bool:
        return False

    def _send_document(self, path: Path, caption: str):
        s3_key = self.object_key(path)
        transfer = TransferConfig(
            multipart_threshold=MULTIPART_THRESHOLD,
            multipart_chunksize=self.chunk_size,
        )

        try:
            self.s3_client.upload_file(str(path), self.bucket_name, s3_key, Config=transfer)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransportError(f"S3 upload failed ({error_code}): {e}")
        except (S3UploadFailedError, BotoCoreError) as e:
            raise TransportError(f"S3 upload failed: {e}")

        logger.info(f"Uploaded to S3: s3://{self.bucket_name}/{s3_key}")


def multipart_chunk_size(split_size_mb: int) -> int:
    """Multipart piece size so a full SPLIT_SIZE_MB part takes PARTS_PER_DOCUMENT pieces."""
    return max(MIN_MULTIPART_CHUNK, split_size_mb * MIB // PARTS_PER_DOCUMENT)


class CompositeSink(NotificationSink):
    """Delivers to every enabled child sink."""

    channel_name = 'composite'

    def __init__(self, sinks: Sequence[NotificationSink]):
        self.sinks = [sink for sink in sinks if sink.enabled]

    @property
    def enabled(self) -> bool:
        return bool(self.sinks)

    def send_status(self, text: str) -> bool:
        results = [sink.send_status(text) for sink in self.sinks]
        return any(results)

    def send_document(self, path, caption: str = '') -> bool:
        results = [sink.send_document(path, caption) for sink in self.sinks]
        return any(results)

    def _send_status(self, text: str):
        pass

    def _send_document(self, path: Path, caption: str):
        pass


def create_sink(config: BackupConfig, timestamp: str) -> NotificationSink:
    """
    Build the sink for a run from configuration.

    Args:
        config: Run configuration
        timestamp: Run timestamp (used in S3 keys)

    Returns:
        A single sink, a CompositeSink, or NullSink if nothing is configured
    """
    sinks = []

    if config.telegram_enabled:
        sinks.append(TelegramSink(config.tg_bot_token, config.tg_chat_id))

    if config.s3_enabled:
        prefix = '/'.join(p for p in (config.s3_prefix, config.project_name, timestamp) if p)
        try:
            sinks.append(S3Sink(
                bucket_name=config.s3_bucket,
                key_prefix=prefix,
                region=config.s3_region,
                access_key=config.aws_access_key_id or None,
                secret_key=config.aws_secret_access_key or None,
                chunk_size=multipart_chunk_size(config.split_size_mb),
            ))
        except BotoCoreError as e:
            logger.warning(f"S3: mirror disabled, cannot create client: {e}")

    if not sinks:
        return NullSink()
    if len(sinks) == 1:
        return sinks[0]
    return CompositeSink(sinks)
