#!/usr/bin/env python3
"""
Merge Samples - Merge biological replicates and normalize CTSS counts
"""

import re
import typer
import pandas as pd
import numpy as np
from typing import List
from pathlib import Path
import logging
from matplotlib.colors import hsv_to_rgb, to_hex

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.2.0"

app = typer.Typer(help=f"Merge samples and normalize CTSS data (v{__version__})")

COORD_COLS = ['chr', 'pos', 'strand']

_LABEL_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9._]*$')


def check_merge_index(sample_cols: List[str], merge_index: List[int], group_names: List[str]):
    """
    Validate a merge index against the samples and the merged labels.

    Raises ValueError when the index length does not match the samples, the
    number of labels does not match the number of groups, or labels are
    empty, malformed or duplicated.
    """
    if len(merge_index) != len(sample_cols):
        raise ValueError(
            f"Number of merge indices ({len(merge_index)}) must match number of samples ({len(sample_cols)})"
        )
    if len(set(merge_index)) != len(group_names):
        raise ValueError(
            f"Number of group names ({len(group_names)}) must match number of unique merge indices "
            f"({len(set(merge_index))})"
        )
    bad = [name for name in group_names if not _LABEL_PATTERN.match(name)]
    if bad:
        raise ValueError(f"Group names must be non-empty and begin with a letter: {bad}")
    if len(set(group_names)) != len(group_names):
        raise ValueError("Duplicated group names are not allowed")


def merge_samples_by_groups(df: pd.DataFrame,
                            sample_cols: List[str],
                            group_names: List[str],
                            merge_index: List[int]) -> pd.DataFrame:
    """
    Merge samples by summing their raw counts.

    Group names are assigned in ascending order of merge index values: the
    first name goes to the group with the lowest index, and so on.

    Args:
        df: CTSS table with chr, pos, strand, and sample columns
        sample_cols: List of sample column names
        group_names: Names for merged groups
        merge_index: Group assignment for each sample

    Returns:
        New DataFrame with one raw-count column per group
    """
    check_merge_index(sample_cols, merge_index, group_names)
    result = df[COORD_COLS].copy()

    for group_name, group_idx in zip(group_names, sorted(set(merge_index))):
        samples_to_merge = [col for col, idx in zip(sample_cols, merge_index) if idx == group_idx]
        logger.info(f"Merging samples {samples_to_merge} into '{group_name}'")
        result[group_name] = df[samples_to_merge].sum(axis=1)

    return result


def library_sizes(df: pd.DataFrame, sample_cols: List[str]) -> pd.Series:
    """Total raw tags per sample."""
    return df[sample_cols].sum(axis=0)


def normalize_to_tpm(df: pd.DataFrame, sample_cols: List[str]) -> pd.DataFrame:
    """
    Normalize raw counts to TPM (Tags Per Million).

    Args:
        df: CTSS table
        sample_cols: List of sample columns to normalize

    Returns:
        DataFrame with TPM values
    """
    result = df.copy()

    for col in sample_cols:
        total = df[col].sum()
        if total > 0:
            result[col] = df[col] / total * 1e6
        else:
            result[col] = 0.0
            logger.warning(f"Sample {col} has zero total counts")

    return result


def sample_colors(labels: List[str]) -> List[str]:
    """
    Assign one color per sample label, evenly spaced around the hue circle.

    Returns hex strings in the same order as the labels.
    """
    n = len(labels)
    if n == 0:
        return []
    hues = np.arange(n) / n
    hsv = np.column_stack([hues, np.ones(n), np.ones(n)])
    return [to_hex(rgb).upper() for rgb in hsv_to_rgb(hsv)]


@app.command("merge")
def merge_command(
    input_file: Path = typer.Option(
        ..., "-i", "--input",
        help="Input CTSS raw count table"
    ),
    output_file: Path = typer.Option(
        ..., "-o", "--output",
        help="Output merged CTSS table"
    ),
    group_names: str = typer.Option(
        ..., "-g", "--groups",
        help="Group names (space-separated)"
    ),
    merge_index: str = typer.Option(
        ..., "-m", "--merge-index",
        help="Group assignment for each sample (space-separated integers)"
    ),
):
    """
    Merge biological replicates into groups by summing raw counts.

    Example:
        ctsspy mergeSamples merge -i raw.tsv -o merged.tsv -g "control treat" -m "1 1 2 2"

        This merges samples 1,2 into "control" and samples 3,4 into "treat"
    """
    logger.info(f"Reading input file: {input_file}")
    df = pd.read_csv(input_file, sep='\t')

    groups = group_names.split()
    indices = [int(x) for x in merge_index.split()]
    sample_cols = [c for c in df.columns if c not in COORD_COLS]

    try:
        result = merge_samples_by_groups(df, sample_cols, groups, indices)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    result.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved merged table to {output_file}")

    for name, color in zip(groups, sample_colors(groups)):
        logger.info(f"Library size for {name}: {result[name].sum():,} (color {color})")


@app.command("normalize")
def normalize_command(
    input_file: Path = typer.Option(
        ..., "-i", "--input",
        help="Input CTSS raw count table"
    ),
    output_file: Path = typer.Option(
        ..., "-o", "--output",
        help="Output normalized CTSS table"
    ),
):
    """
    Normalize CTSS counts to TPM (Tags Per Million).

    Example:
        ctsspy mergeSamples normalize -i merged.tsv -o normalized.tsv
    """
    logger.info(f"Reading input file: {input_file}")
    df = pd.read_csv(input_file, sep='\t')

    sample_cols = [c for c in df.columns if c not in COORD_COLS]
    for col, size in library_sizes(df, sample_cols).items():
        logger.info(f"Library size for {col}: {size:,}")

    result = normalize_to_tpm(df, sample_cols)

    result.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved normalized table to {output_file}")


if __name__ == '__main__':
    app()
