"""Record indexer: one pass over every input file, keeping only record locations."""

from __future__ import annotations

import asyncio
import logging
import os

from filters import rejection_reason
from hptime import format_hptime
from models import FilterConfig, IndexEntry, IndexSummary, RecordIndex, SourceFile
from mseed_reader import MAX_RECORD_LENGTH, MSeedReader, RecordDecodeError
from rlimit import raise_open_file_limit
from sources import SourceCatalog

OPEN_FILE_HEADROOM = int(os.getenv("OPEN_FILE_HEADROOM", "20"))

LOGGER = logging.getLogger(__name__)


async def read_files(
    catalog: SourceCatalog,
    config: FilterConfig,
    max_record_length: int = MAX_RECORD_LENGTH,
) -> tuple[RecordIndex, IndexSummary]:
    """Index every record in ``catalog`` that passes ``config``.

    Records are appended in file order, then in-file order. Payload bytes are
    never kept; each entry records only where its record lives. Control is
    handed back to the event loop after each file so a cancelled run stops
    between files.

    Raises:
        RuntimeError: A file cannot be opened or holds a malformed data record.
            Nothing after a damaged record can be trusted, so the whole run
            stops rather than skipping it.
    """
    index = RecordIndex()
    summary = IndexSummary()

    for source in catalog:
        _index_file(source, config, max_record_length, index, summary)
        summary.files += 1
        await asyncio.sleep(0)

    raise_open_file_limit(summary.files + OPEN_FILE_HEADROOM)

    LOGGER.info(
        "Indexed files=%s records=%s samples=%s",
        summary.files,
        summary.records,
        summary.samples,
    )
    return index, summary


def _index_file(
    source: SourceFile,
    config: FilterConfig,
    max_record_length: int,
    index: RecordIndex,
    summary: IndexSummary,
) -> None:
    LOGGER.debug("Indexing %s", source.path)
    try:
        with open(source.path, "rb") as stream:
            for info in MSeedReader(stream, max_record_length=max_record_length):
                reason = rejection_reason(info, config)
                if reason is not None:
                    LOGGER.debug(
                        "Skipping (%s) %s, %s",
                        reason,
                        info.source_name,
                        format_hptime(info.start_time),
                    )
                    continue

                index.append(
                    IndexEntry(
                        source=source,
                        offset=info.offset,
                        length=info.length,
                        start_time=info.start_time,
                        end_time=info.end_time,
                    )
                )
                summary.records += 1
                summary.samples += info.sample_count
    except OSError as exc:
        raise RuntimeError(f"Cannot read {source.path}: {exc.strerror or exc}") from exc
    except RecordDecodeError as exc:
        raise RuntimeError(f"Cannot read {source.path}: {exc}") from exc
