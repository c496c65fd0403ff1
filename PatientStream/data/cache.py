"""Source file resolution and the columnar (parquet) cache of raw delimited tables.

Raw tables are converted to parquet exactly once and the cache lives beside the source, in a ``subset/``
directory. Conversion writes a temporary file in the destination directory first and only renames it into place
once it is known to be non-empty, so readers never observe a partially written cache.
"""

import os
import re
import tempfile
from pathlib import Path

import polars as pl
from loguru import logger

CACHE_DIR_NAME = "subset"
PARQUET_COMPRESSION = "zstd"

_DELIMITED_SUFFIX_RE = re.compile(r"\.(csv|tsv)(\.gz)?$", re.IGNORECASE)


def separator_for(fp: Path | str) -> str:
    """Returns the delimiter implied by a file name: a tab for ``.tsv`` files, otherwise a comma.

    Examples:
        >>> separator_for("data/LABEVENTS.csv.gz")
        ','
        >>> separator_for("data/measurements.TSV")
        '\\t'
    """
    return "\t" if ".tsv" in str(fp).lower() else ","


def match_actual_case(fp: Path) -> Path:
    """Returns the file in `fp`'s directory whose name matches `fp`'s name case-insensitively, if unique.

    If the directory does not exist or there is no unique case-insensitive match, `fp` is returned unchanged.
    """
    if fp.exists() or not fp.parent.is_dir():
        return fp

    matches = [p for p in fp.parent.iterdir() if p.name.lower() == fp.name.lower()]
    if len(matches) == 1:
        logger.debug(f"Resolved {fp.name} to {matches[0].name} by case-insensitive match")
        return matches[0]
    return fp


def _alternate_path(fp: Path) -> Path:
    name = fp.name
    lower = name.lower()
    if lower.endswith(".csv.gz") or lower.endswith(".tsv.gz"):
        return fp.with_name(name[: -len(".gz")])
    elif lower.endswith(".csv") or lower.endswith(".tsv"):
        return fp.with_name(f"{name}.gz")
    raise ValueError(f"Path does not have an expected extension (.csv, .csv.gz, .tsv, .tsv.gz): {fp}")


def find_path_with_fallback(fp: Path | str) -> tuple[Path, str]:
    """Resolves a configured table path to an existing file, with its delimiter.

    The path is matched case-insensitively within its directory. If it does not exist, the compressed or
    uncompressed variant (``.csv`` ⇄ ``.csv.gz``, ``.tsv`` ⇄ ``.tsv.gz``) is tried instead.

    Args:
        fp: The configured path.

    Returns:
        The path of the file that actually exists and the separator to parse it with.

    Raises:
        ValueError: If `fp` does not have a delimited-text extension.
        FileNotFoundError: If neither `fp` nor its alternate extension exists. Both paths are named.
    """
    fp = Path(fp)
    alt_fp = _alternate_path(fp)

    for candidate in (fp, alt_fp):
        candidate = match_actual_case(candidate)
        if candidate.is_file():
            if candidate != fp:
                logger.debug(f"Using {candidate} in place of {fp}")
            return candidate, separator_for(candidate)

    raise FileNotFoundError(f"Neither path exists: {fp} or {alt_fp}")


def cache_path_for(source_fp: Path | str) -> Path:
    """Returns the parquet cache path for a delimited source file.

    Examples:
        >>> str(cache_path_for("/data/mimic/ADMISSIONS.csv.gz"))
        '/data/mimic/subset/ADMISSIONS.parquet'
        >>> str(cache_path_for("/data/mimic/ADMISSIONS.csv"))
        '/data/mimic/subset/ADMISSIONS.parquet'
        >>> str(cache_path_for("notes.tsv"))
        'subset/notes.parquet'
    """
    source_fp = Path(source_fp)
    return source_fp.parent / CACHE_DIR_NAME / _DELIMITED_SUFFIX_RE.sub(".parquet", source_fp.name)


def is_valid_cache(fp: Path) -> bool:
    return fp.is_file() and fp.stat().st_size > 0


def _convert_to_parquet(source_fp: Path, out_fp: Path, separator: str):
    """Converts a delimited text file into a zstd-compressed parquet file of string columns.

    No types are inferred, so codes such as ``"0389"`` or ``"V4581"`` are stored exactly as written. Ragged rows
    are truncated or null-padded rather than aborting the conversion.
    """
    read_kwargs = dict(
        separator=separator,
        quote_char='"',
        has_header=True,
        null_values="",
        ignore_errors=True,
        infer_schema=False,
        truncate_ragged_lines=True,
    )

    if source_fp.name.lower().endswith(".gz"):
        # Compressed inputs can't be scanned lazily.
        pl.read_csv(source_fp, **read_kwargs).write_parquet(out_fp, compression=PARQUET_COMPRESSION)
    else:
        pl.scan_csv(source_fp, **read_kwargs).sink_parquet(out_fp, compression=PARQUET_COMPRESSION)


def ensure_cache(source_fp: Path | str, separator: str | None = None) -> Path:
    """Returns the parquet cache of `source_fp`, converting the source first if no valid cache exists.

    A valid cache is an existing, non-empty file at `cache_path_for(source_fp)`. Otherwise the source is
    converted into a temporary file in the cache directory, which is renamed into place only if it is non-empty.

    Args:
        source_fp: The delimited source file.
        separator: The delimiter. Inferred from the file name if not given.

    Returns:
        The path of the valid parquet cache.

    Raises:
        RuntimeError: If the conversion produced an empty file. The empty file is not installed.
    """
    source_fp = Path(source_fp)
    cache_fp = cache_path_for(source_fp)

    if is_valid_cache(cache_fp):
        logger.debug(f"Cache hit for {source_fp.name}: {cache_fp}")
        return cache_fp

    if separator is None:
        separator = separator_for(source_fp)

    logger.info(f"Caching {source_fp.name} -> {cache_fp}")
    cache_fp.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(suffix=".parquet.tmp", prefix=f".{cache_fp.stem}.", dir=cache_fp.parent)
    os.close(fd)
    tmp_fp = Path(tmp_name)

    try:
        _convert_to_parquet(source_fp, tmp_fp, separator)
        if not is_valid_cache(tmp_fp):
            raise RuntimeError(f"Failed to cache {source_fp}: conversion to {cache_fp.name} produced an empty file")
        os.replace(tmp_fp, cache_fp)
    finally:
        tmp_fp.unlink(missing_ok=True)

    return cache_fp
