"""
Storage handlers for encrypted backup archives.

Supports:
- ContentStoreClient: content-addressed upload to IPFS nodes with a
  minimum replica count enforced through pinning
- LocalMirror / S3Mirror: optional secondary copy of each archive
"""

import json
import logging
import os
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from ipfs_backup.models import PinResult, PinVerification, UploadResult


logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class StoreError(Exception):
    """Raised when a content store endpoint call fails."""
    pass


class NotPinned(StoreError):
    """Raised when unpinning content that an endpoint does not have pinned."""
    pass


class InsufficientReplication(StoreError):
    """Raised when fewer endpoints than required pinned the content."""

    def __init__(self, required: int, achieved: int, pin_results: Optional[List[PinResult]] = None):
        self.required = required
        self.achieved = achieved
        self.pin_results = pin_results or []
        super().__init__(
            f"Failed to pin on required number of nodes. Required: {required}, Pinned: {achieved}"
        )


class SecondaryMirrorError(Exception):
    """Raised when the secondary mirror copy fails."""
    pass


class StoreEndpoint:
    """
    A single IPFS node reached through its HTTP RPC API (/api/v0).
    """

    def __init__(self, name: str, url: str, timeout: int = 30):
        """
        Initialize endpoint.

        Args:
            name: Label used in logs and pin results
            url: Base URL of the node RPC API (e.g. http://ipfs-1:5001)
            timeout: Seconds allowed for pin/ls/rm/id calls
        """
        self.name = name
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

    def __repr__(self):
        return f'<StoreEndpoint {self.name} {self.url}>'

    def _call(self, command: str, params: Optional[Dict[str, Any]] = None, files=None,
              timeout=None, stream: bool = False) -> requests.Response:
        url = f"{self.url}/api/v0/{command}"
        try:
            response = self.session.post(
                url,
                params=params,
                files=files,
                timeout=timeout if timeout is not None else self.timeout,
                stream=stream,
            )
        except requests.RequestException as e:
            raise StoreError(f"{self.name}: {command} request failed: {e}") from e

        if response.status_code >= 400:
            raise StoreError(f"{self.name}: {command} failed ({response.status_code}): {self._error_message(response)}")

        return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            return response.json().get('Message') or response.text
        except ValueError:
            return response.text

    def add(self, file_path: str) -> str:
        """
        Add a file without pinning it.

        Returns:
            CIDv1 of the content
        """
        with open(file_path, 'rb') as f:
            # Large archives may take much longer than a pin call
            response = self._call(
                'add',
                params={'pin': 'false', 'cid-version': '1'},
                files={'file': (os.path.basename(file_path), f, 'application/octet-stream')},
                timeout=(self.timeout, None),
            )

        lines = [line for line in response.text.splitlines() if line.strip()]
        if not lines:
            raise StoreError(f"{self.name}: add returned an empty response")

        try:
            return json.loads(lines[-1])['Hash']
        except (ValueError, KeyError) as e:
            raise StoreError(f"{self.name}: unexpected add response: {lines[-1]}") from e

    def pin_add(self, cid: str):
        self._call('pin/add', params={'arg': cid})

    def pin_ls(self, cid: str) -> bool:
        """Check whether the endpoint holds a recursive pin for cid."""
        try:
            response = self._call('pin/ls', params={'arg': cid, 'type': 'recursive'})
        except StoreError as e:
            if 'not pinned' in str(e):
                return False
            raise
        return cid in response.json().get('Keys', {})

    def pin_rm(self, cid: str):
        try:
            self._call('pin/rm', params={'arg': cid})
        except StoreError as e:
            if 'not pinned' in str(e):
                raise NotPinned(str(e)) from e
            raise

    def cat(self, cid: str, dest_path: str) -> int:
        """
        Stream content to a local file.

        Returns:
            Number of bytes written
        """
        response = self._call('cat', params={'arg': cid}, timeout=(self.timeout, None), stream=True)
        written = 0
        try:
            with open(dest_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
        except requests.RequestException as e:
            raise StoreError(f"{self.name}: cat interrupted: {e}") from e
        finally:
            response.close()
        return written

    def identity(self) -> str:
        """Return the peer ID of the node."""
        return self._call('id').json().get('ID', '')


class ContentStoreClient:
    """
    Uploads content to a set of IPFS endpoints and enforces replication.

    Content is added once to the primary endpoint, then pinned on every
    endpoint in parallel. The upload only succeeds when at least
    `replication_factor` endpoints confirmed the pin.
    """

    def __init__(self, endpoints: List[StoreEndpoint], replication_factor: int = 2,
                 primary_index: int = 0, max_workers: Optional[int] = None):
        if not endpoints:
            raise StoreError("No IPFS nodes configured")
        self.endpoints = endpoints
        self.replication_factor = replication_factor
        self.primary = endpoints[primary_index]
        self.max_workers = max_workers or len(endpoints)

    def upload(self, file_path: str) -> UploadResult:
        """
        Add a file to the store and pin it on every endpoint.

        Args:
            file_path: Path to local file

        Returns:
            UploadResult with content address and per-endpoint pin results

        Raises:
            StoreError: If the file is missing/empty or the primary add fails
            InsufficientReplication: If too few endpoints pinned the content
        """
        if not os.path.isfile(file_path):
            raise StoreError(f"File not found: {file_path}")

        size_bytes = os.path.getsize(file_path)
        if size_bytes == 0:
            raise StoreError(f"Refusing to upload empty file: {file_path}")

        logger.info(f"Uploading {file_path} ({size_bytes / 1024 / 1024:.2f} MB) to {self.primary.name}")
        started = time.monotonic()

        cid = self.primary.add(file_path)
        logger.info(f"Content added: {cid}")

        pin_results = self.pin_all(cid)

        duration = round(time.monotonic() - started, 2)
        logger.info(f"Upload completed: {cid} pinned on {sum(r.success for r in pin_results)}/{len(pin_results)} nodes in {duration}s")

        return UploadResult(
            content_address=cid,
            size_bytes=size_bytes,
            pin_results=pin_results,
            duration_seconds=duration,
        )

    def _fan_out(self, func, cid: str) -> List[Any]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(func, endpoint, cid) for endpoint in self.endpoints]
            return [future.result() for future in futures]

    def _pin_one(self, endpoint: StoreEndpoint, cid: str) -> PinResult:
        try:
            endpoint.pin_add(cid)
            logger.debug(f"Pinned {cid} on {endpoint.name}")
            return PinResult(endpoint=endpoint.name, success=True)
        except Exception as e:
            logger.warning(f"Failed to pin {cid} on {endpoint.name}: {e}")
            return PinResult(endpoint=endpoint.name, success=False, error=str(e))

    def pin_all(self, cid: str) -> List[PinResult]:
        """
        Pin content on every endpoint concurrently.

        Raises:
            InsufficientReplication: If successes < replication factor
        """
        pin_results = self._fan_out(self._pin_one, cid)

        achieved = sum(1 for result in pin_results if result.success)
        if achieved < self.replication_factor:
            raise InsufficientReplication(self.replication_factor, achieved, pin_results)

        return pin_results

    def _verify_one(self, endpoint: StoreEndpoint, cid: str) -> Dict[str, Any]:
        try:
            pinned = endpoint.pin_ls(cid)
            if not pinned:
                logger.warning(f"{cid} not pinned on {endpoint.name}")
            return {'endpoint': endpoint.name, 'pinned': pinned}
        except Exception as e:
            logger.warning(f"Failed to verify pin of {cid} on {endpoint.name}: {e}")
            return {'endpoint': endpoint.name, 'pinned': False, 'error': str(e)}

    def verify_pin(self, cid: str) -> PinVerification:
        """Report which endpoints currently hold a pin for cid."""
        results = self._fan_out(self._verify_one, cid)
        return PinVerification(
            content_address=cid,
            all_pinned=all(r['pinned'] for r in results),
            per_endpoint=results,
        )

    def _unpin_one(self, endpoint: StoreEndpoint, cid: str) -> PinResult:
        try:
            endpoint.pin_rm(cid)
            logger.debug(f"Unpinned {cid} on {endpoint.name}")
            return PinResult(endpoint=endpoint.name, success=True)
        except NotPinned:
            logger.debug(f"{cid} already unpinned on {endpoint.name}")
            return PinResult(endpoint=endpoint.name, success=True, note='already unpinned')
        except Exception as e:
            logger.warning(f"Failed to unpin {cid} on {endpoint.name}: {e}")
            return PinResult(endpoint=endpoint.name, success=False, error=str(e))

    def unpin(self, cid: str) -> List[PinResult]:
        """Best-effort unpin on every endpoint."""
        logger.info(f"Unpinning {cid} from all nodes")
        return self._fan_out(self._unpin_one, cid)

    def download(self, cid: str, dest_path: str) -> int:
        """
        Fetch content to a local file, trying the primary endpoint first.

        Returns:
            Number of bytes written

        Raises:
            StoreError: If no endpoint could serve the content
        """
        ordered = [self.primary] + [e for e in self.endpoints if e is not self.primary]
        errors = []

        for endpoint in ordered:
            try:
                written = endpoint.cat(cid, dest_path)
                logger.info(f"Downloaded {cid} from {endpoint.name} ({written} bytes)")
                return written
            except (StoreError, OSError) as e:
                logger.warning(f"Download of {cid} from {endpoint.name} failed: {e}")
                errors.append(f"{endpoint.name}: {e}")

        if os.path.exists(dest_path):
            os.remove(dest_path)
        raise StoreError(f"Failed to download {cid}: {'; '.join(errors)}")

    def check_health(self) -> List[Dict[str, Any]]:
        """Probe every endpoint's identity call."""
        results = []
        for endpoint in self.endpoints:
            try:
                peer_id = endpoint.identity()
                results.append({'endpoint': endpoint.name, 'url': endpoint.url, 'healthy': True, 'id': peer_id})
            except StoreError as e:
                logger.warning(f"Health check failed for {endpoint.name}: {e}")
                results.append({'endpoint': endpoint.name, 'url': endpoint.url, 'healthy': False, 'error': str(e)})
        return results


def create_content_store(settings) -> ContentStoreClient:
    """Create a ContentStoreClient from configuration."""
    timeout = settings.get('IPFS_TIMEOUT', 30)
    endpoints = [
        StoreEndpoint(name=f"node{index}", url=url, timeout=timeout)
        for index, url in enumerate(settings.get('IPFS_NODE_URLS', []), start=1)
    ]
    return ContentStoreClient(endpoints, replication_factor=settings.get('IPFS_REPLICATION_FACTOR', 2))


def _dated_key(backup_type: str, filename: str) -> str:
    now = datetime.now(timezone.utc)
    return f"{backup_type}/{now.year}/{now.month:02d}/{filename}"


class LocalMirror:
    """
    Copies archives into a secondary directory (e.g. a bulk storage mount).

    Layout: {base_path}/{backup_type}/{YYYY}/{MM}/{filename}
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    def __repr__(self):
        return f'<LocalMirror {self.base_path}>'

    def store(self, source_path: str, backup_type: str) -> str:
        """
        Copy archive to the mirror.

        Returns:
            Relative path of stored file (from base_path)

        Raises:
            SecondaryMirrorError: If the copy fails
        """
        if not os.path.exists(source_path):
            raise SecondaryMirrorError(f"Source file not found: {source_path}")

        relative_path = _dated_key(backup_type, os.path.basename(source_path))
        dest_path = self.base_path / relative_path

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_path, dest_path)
        except PermissionError as e:
            raise SecondaryMirrorError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise SecondaryMirrorError(f"Failed to mirror locally: {e}")

        return relative_path


class S3Mirror:
    """
    Uploads archives to an S3 bucket.

    Key layout: {prefix}/{backup_type}/{YYYY}/{MM}/{filename}
    """

    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(self, bucket_name: str, prefix: str = '', region: str = 'us-east-1',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None):
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise SecondaryMirrorError(f"Failed to initialize S3 client: {e}")

    def __repr__(self):
        return f'<S3Mirror s3://{self.bucket_name}/{self.prefix}>'

    def store(self, source_path: str, backup_type: str) -> str:
        """
        Upload archive to S3.

        Returns:
            S3 key of uploaded file

        Raises:
            SecondaryMirrorError: If upload fails
        """
        if not os.path.exists(source_path):
            raise SecondaryMirrorError(f"Source file not found: {source_path}")

        key = _dated_key(backup_type, os.path.basename(source_path))
        if self.prefix:
            key = f"{self.prefix}/{key}"

        try:
            if os.path.getsize(source_path) > self.MULTIPART_THRESHOLD:
                self._multipart_upload(source_path, key)
            else:
                with open(source_path, 'rb') as f:
                    self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise SecondaryMirrorError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise SecondaryMirrorError(f"S3 upload failed: {e}")

        return key

    def _multipart_upload(self, source_path: str, key: str):
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(source_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break
                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise


def create_mirror(target: Optional[str], settings=None):
    """
    Factory function to create the secondary mirror handler.

    Args:
        target: None/empty for no mirror, s3://bucket/prefix, or a directory
        settings: Configuration mapping holding AWS credentials

    Returns:
        LocalMirror, S3Mirror or None
    """
    if not target:
        return None

    settings = settings or {}
    if target.startswith('s3://'):
        parsed = urlparse(target)
        return S3Mirror(
            bucket_name=parsed.netloc,
            prefix=parsed.path,
            region=settings.get('AWS_REGION', 'us-east-1'),
            access_key=settings.get('AWS_ACCESS_KEY_ID'),
            secret_key=settings.get('AWS_SECRET_ACCESS_KEY'),
        )

    return LocalMirror(target)
