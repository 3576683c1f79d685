"""Incremental <Record> tokenizer for Apple Health exports.

An export.xml can be several gigabytes, so it is never parsed as a whole.
Bytes are decoded incrementally and each complete ``<Record>`` element is cut
out of a rolling text buffer and yielded as its own small document wrapped in
``<HealthData>``. Both forms used by the export are recognised:

    <Record type="..." value="70.2" startDate="..."/>
    <Record type="..." value="42.1" startDate="..."><MetadataEntry .../></Record>
"""

import codecs
import logging
import threading
import time
from typing import BinaryIO, Callable, Iterable, Iterator, Optional

from healthsync.config.settings import (
    MAX_BUFFER_SIZE,
    STREAM_CHUNK_SIZE,
    STREAM_RETRY_ATTEMPTS,
    STREAM_RETRY_DELAY_SECONDS,
)
from healthsync.exceptions import (
    BlobNotFoundError,
    PersistenceError,
    ProcessingCancelled,
    StreamReadError,
)
from healthsync.storage.blob_store import BlobStore

logger = logging.getLogger(__name__)

RECORD_START = "<Record"
RECORD_END = "</Record>"

# Returned by a record handler to end the stream early
STOP_PROCESSING = object()

# Errors a handler may raise that must abort the whole pipeline
FATAL_ERRORS = (PersistenceError, ProcessingCancelled)

_START_DELIMITERS = " \t\r\n/>"


def wrap_record(record: str) -> str:
    """Wrap a single <Record> element in a root so it parses on its own."""
    return f"<HealthData>{record}</HealthData>"


def _find_start(buffer: str, pos: int, end: Optional[int] = None) -> int:
    """Index of the next ``<Record`` start tag at or after pos, or -1."""
    limit = len(buffer) if end is None else end
    while True:
        index = buffer.find(RECORD_START, pos, limit)
        if index == -1:
            return -1
        after = index + len(RECORD_START)
        # At the very end of the buffer the next character is not known yet
        if after >= len(buffer) or buffer[after] in _START_DELIMITERS:
            return index
        pos = index + 1


def _drain(buffer: str):
    """
    Yield every complete record in ``buffer``.

    Returns (via StopIteration) the unconsumed remainder, which starts at an
    incomplete record or holds at most a possible partial start marker.
    """
    pos = 0
    while True:
        start = _find_start(buffer, pos)
        if start == -1:
            keep_from = max(pos, len(buffer) - (len(RECORD_START) - 1))
            return buffer[keep_from:]

        tag_end = buffer.find(">", start)
        if tag_end == -1:
            return buffer[start:]

        broken = buffer.find("<", start + 1, tag_end)
        if broken != -1:
            logger.debug(f"Discarding truncated record start tag ({broken - start} chars)")
            pos = broken
            continue

        if buffer[tag_end - 1] == "/":
            yield wrap_record(buffer[start:tag_end + 1])
            pos = tag_end + 1
            continue

        end = buffer.find(RECORD_END, tag_end)
        if end == -1:
            return buffer[start:]

        # The nearest start before an end marker owns it
        inner = _find_start(buffer, tag_end, end)
        if inner != -1:
            logger.debug(f"Discarding unterminated record ({inner - start} chars)")
            pos = inner
            continue

        stop = end + len(RECORD_END)
        yield wrap_record(buffer[start:stop])
        pos = stop


def iter_record_fragments(
    chunks: Iterable[bytes],
    max_buffer_size: int = MAX_BUFFER_SIZE,
    encoding: str = "utf-8"
) -> Iterator[str]:
    """
    Lazily yield wrapped <Record> fragments from a stream of byte chunks.

    Records come out in stream order and the result does not depend on where
    the chunk boundaries fall. Closing the generator stops reading.

    Args:
        chunks: Raw bytes of the export, in order
        max_buffer_size: Characters kept while waiting for a record to
            complete. Past this the buffer is cleared and the partial
            record is lost.
        encoding: Text encoding of the export

    Yields:
        ``<HealthData><Record .../></HealthData>`` strings
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    buffer = ""

    for chunk in chunks:
        if not chunk:
            continue
        buffer += decoder.decode(chunk)
        buffer = yield from _drain(buffer)

        # The remainder is a single unfinished record, so there is nothing to keep
        if len(buffer) > max_buffer_size:
            logger.warning(f"Buffer exceeded {max_buffer_size} chars with no complete record, clearing {len(buffer)} chars")
            buffer = ""

    buffer += decoder.decode(b"", final=True)
    buffer = yield from _drain(buffer)

    if RECORD_START in buffer:
        logger.warning(f"Stream ended inside a record, discarding {len(buffer)} chars")


def iter_chunks(stream: BinaryIO, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    """Read a binary file-like object in fixed-size chunks."""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return
        yield chunk


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ProcessingCancelled("Processing cancelled while reading export")


def _tokenize_once(
    store: BlobStore,
    key: str,
    handler: Callable[[str], object],
    chunk_size: int,
    max_buffer_size: int,
    cancel_event: Optional[threading.Event]
) -> int:
    processed = 0
    with store.read_stream(key) as stream:
        fragments = iter_record_fragments(iter_chunks(stream, chunk_size), max_buffer_size)
        try:
            for fragment in fragments:
                _check_cancelled(cancel_event)
                try:
                    result = handler(fragment)
                except FATAL_ERRORS:
                    raise
                except Exception:
                    logger.exception("Error processing record, continuing")
                    result = None

                processed += 1
                if processed % 100000 == 0:
                    logger.info(f"Tokenized {processed:,} records from {key}")

                if result is STOP_PROCESSING:
                    logger.info(f"Stopping early after {processed:,} records")
                    break
        finally:
            fragments.close()
    return processed


def process_record_stream(
    store: BlobStore,
    key: str,
    handler: Callable[[str], object],
    attempts: int = STREAM_RETRY_ATTEMPTS,
    delay_seconds: float = STREAM_RETRY_DELAY_SECONDS,
    chunk_size: int = STREAM_CHUNK_SIZE,
    max_buffer_size: int = MAX_BUFFER_SIZE,
    cancel_event: Optional[threading.Event] = None,
    on_retry: Optional[Callable[[], None]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> int:
    """
    Stream an export from the blob store and feed each record to ``handler``.

    A handler error for one record is logged and skipped. Returning
    STOP_PROCESSING ends the stream early. If reading the stream fails the
    whole operation starts over from the beginning of the object, so handlers
    must tolerate seeing records again. ``on_retry`` is called before each
    new attempt so the handler can rewind its own position.

    Returns:
        Number of records handed to ``handler`` in the successful attempt

    Raises:
        BlobNotFoundError: The export does not exist
        StreamReadError: Reading failed on every attempt
        PersistenceError, ProcessingCancelled: Raised by the handler
    """
    logger.info(f"Starting to process XML file: {key}")

    for attempt in range(1, attempts + 1):
        try:
            processed = _tokenize_once(store, key, handler, chunk_size, max_buffer_size, cancel_event)
            logger.info(f"Finished processing {processed:,} records from {key}")
            return processed
        except FATAL_ERRORS:
            raise
        except BlobNotFoundError:
            raise
        except Exception as e:
            logger.error(f"Error reading {key} (attempt {attempt}/{attempts}): {e}")
            if attempt >= attempts:
                raise StreamReadError(f"Failed to read {key} after {attempts} attempts: {e}") from e
            logger.info(f"Retrying in {delay_seconds}s...")
            sleep(delay_seconds)
            if on_retry:
                on_retry()

    return 0
