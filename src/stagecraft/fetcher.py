"""Downloads external blobs and verifies them before any stage can see them."""

from collections.abc import Callable, Iterator
import os
from pathlib import Path
import tempfile
import time
from urllib.parse import unquote, urlparse

import httpx
from pyvider.telemetry import logger

from .crypto import CHUNK_SIZE, IncrementalDigest, file_digest, parse_digest
from .exceptions import DigestMismatchError, FetchError, NetworkError, NotFoundError

NOT_FOUND_STATUSES = frozenset({404, 410})


class ChecksumFetcher:
    DEFAULT_RETRIES = 3
    DEFAULT_BACKOFF = 0.5
    DEFAULT_TIMEOUT = 60.0

    def __init__(
        self,
        cache_dir: Path,
        *,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout
        self._client = client
        self._sleep = sleep

    def default_destination(self, expected_digest: str) -> Path:
        algorithm, value = parse_digest(expected_digest)
        return self.cache_dir / "downloads" / f"{algorithm}-{value}"

    def fetch(
        self, url: str, expected_digest: str, destination: Path | None = None
    ) -> Path:
        """
        Returns a local path whose content matches `expected_digest`.

        An existing, already-verified file at the destination is reused;
        anything else is (re-)downloaded and verified before it is moved
        into place.
        """
        try:
            algorithm, expected = parse_digest(expected_digest)
        except ValueError as e:
            raise FetchError(f"Invalid digest for {url}: {e}", url) from e

        dest = Path(destination) if destination else self.default_destination(expected_digest)
        dest.parent.mkdir(parents=True, exist_ok=True)

        if dest.is_file():
            if file_digest(dest, algorithm) == expected:
                logger.debug("Reusing verified download", url=url, path=str(dest))
                return dest
            logger.warning(f"Cached file {dest} failed verification, fetching again.")
            dest.unlink()

        attempt = 0
        while True:
            try:
                temp_path, actual = self._download(url, dest.parent, algorithm)
                break
            except NetworkError as e:
                if attempt >= self.retries:
                    logger.error(f"Giving up on {url} after {attempt + 1} attempts: {e}")
                    raise
                delay = self.backoff * (2**attempt)
                logger.warning(f"Transient fetch failure for {url}, retrying in {delay:.2f}s: {e}")
                self._sleep(delay)
                attempt += 1

        if actual != expected:
            temp_path.unlink(missing_ok=True)
            raise DigestMismatchError(url, f"{algorithm}:{expected}", f"{algorithm}:{actual}")

        os.replace(temp_path, dest)
        logger.info(f"Fetched and verified {url}", digest=f"{algorithm}:{expected}")
        return dest

    def _download(self, url: str, directory: Path, algorithm: str) -> tuple[Path, str]:
        fd, temp_name = tempfile.mkstemp(dir=directory, prefix=".fetch-", suffix=".part")
        temp_path = Path(temp_name)
        digest = IncrementalDigest(algorithm)
        completed = False
        try:
            with os.fdopen(fd, "wb") as out:
                for chunk in self._iter_chunks(url):
                    digest.update(chunk)
                    out.write(chunk)
            completed = True
            return temp_path, digest.hexdigest()
        finally:
            if not completed:
                temp_path.unlink(missing_ok=True)

    def _iter_chunks(self, url: str) -> Iterator[bytes]:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            source = Path(unquote(parsed.path))
            if not source.is_file():
                raise NotFoundError(f"No such file: {source}", url)
            with source.open("rb") as f:
                yield from iter(lambda: f.read(CHUNK_SIZE), b"")
            return

        if self._client is not None:
            yield from self._stream(self._client, url)
            return
        with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
            yield from self._stream(client, url)

    def _stream(self, client: httpx.Client, url: str) -> Iterator[bytes]:
        try:
            with client.stream("GET", url) as response:
                if response.status_code in NOT_FOUND_STATUSES:
                    raise NotFoundError(f"{url} returned HTTP {response.status_code}", url)
                response.raise_for_status()
                yield from response.iter_bytes(CHUNK_SIZE)
        except httpx.HTTPStatusError as e:
            raise NetworkError(f"{url} returned HTTP {e.response.status_code}", url) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Transport failure fetching {url}: {e}", url) from e
