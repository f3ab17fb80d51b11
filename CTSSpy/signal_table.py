"""
Signal Table - per-sample CTSS raw counts, normalized signal and inclusion mask

A SignalTable can be built from the wide CTSS table written by the other
commands (chr, pos, strand, one column per sample) or from a long table with
one row per (sample, CTSS). Both give the same interface; callers never see
which one was used.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from CTSSpy.errors import DataError
from CTSSpy.merge_samples import COORD_COLS, normalize_to_tpm

logger = logging.getLogger(__name__)

STRAND_ORDER = {'+': 0, '-': 1}

CTSS_COLS = ['chr', 'pos', 'strand', 'count', 'tpm']


def sort_ctss(df: pd.DataFrame) -> pd.DataFrame:
    """Sort CTSS rows by chromosome, strand (+ before -) and position."""
    order = df['strand'].map(STRAND_ORDER)
    return (df.assign(_strand_order=order)
              .sort_values(['chr', '_strand_order', 'pos'], kind='mergesort')
              .drop(columns='_strand_order')
              .reset_index(drop=True))


class SignalTable:
    """
    Read-only container of CTSS signal for several samples.

    Args:
        coords: DataFrame with chr, pos, strand (one row per CTSS)
        counts: raw tag counts, one column per sample, aligned with coords
        tpm: normalized signal, same shape as counts
        mask: optional boolean inclusion mask, either one value per CTSS
            (Series) or one per CTSS and sample (DataFrame)
    """

    def __init__(self, coords: pd.DataFrame, counts: pd.DataFrame, tpm: pd.DataFrame,
                 mask: Optional[Union[pd.Series, pd.DataFrame]] = None):
        coords = coords[COORD_COLS].reset_index(drop=True)
        counts = counts.reset_index(drop=True)
        tpm = tpm.reset_index(drop=True)
        samples = list(counts.columns)

        if list(tpm.columns) != samples:
            raise DataError(f"Normalized signal columns {list(tpm.columns)} do not match samples {samples}")
        if not (len(coords) == len(counts) == len(tpm)):
            raise DataError("Coordinates, counts and normalized signal must have the same number of rows")
        bad_strand = ~coords['strand'].isin(list(STRAND_ORDER))
        if bad_strand.any():
            raise DataError(f"Invalid strand values: {sorted(coords.loc[bad_strand, 'strand'].unique())}")
        if coords.duplicated(COORD_COLS).any():
            raise DataError("Duplicated CTSS coordinates (chr, pos, strand)")
        if (counts < 0).any().any() or (tpm < 0).any().any():
            raise DataError("Counts and normalized signal must be non-negative")

        if mask is None:
            mask = pd.DataFrame(True, index=counts.index, columns=samples)
        elif isinstance(mask, pd.Series):
            mask = pd.DataFrame({s: mask.to_numpy(dtype=bool) for s in samples}, index=counts.index)
        else:
            mask = mask.reset_index(drop=True)[samples].astype(bool)

        self._coords = coords
        self._counts = counts
        self._tpm = tpm.astype(float)
        self._mask = mask

    @classmethod
    def from_wide(cls, counts_df: pd.DataFrame, tpm_df: Optional[pd.DataFrame] = None,
                  mask: Optional[Union[pd.Series, pd.DataFrame]] = None) -> 'SignalTable':
        """
        Build from wide tables (chr, pos, strand, <sample columns>).

        If no normalized table is given, raw counts are normalized to TPM.
        """
        sample_cols = [c for c in counts_df.columns if c not in COORD_COLS]
        if not sample_cols:
            raise DataError("CTSS table has no sample columns")
        counts_df = counts_df.reset_index(drop=True)
        if tpm_df is None:
            tpm_df = normalize_to_tpm(counts_df, sample_cols)
        else:
            missing = [c for c in sample_cols if c not in tpm_df.columns]
            if missing:
                raise DataError(f"Normalized table is missing samples {missing}")
            tpm_df = counts_df[COORD_COLS].merge(
                tpm_df[COORD_COLS + sample_cols], on=COORD_COLS, how='left').fillna(0.0)
        return cls(counts_df[COORD_COLS], counts_df[sample_cols], tpm_df[sample_cols], mask)

    @classmethod
    def from_long(cls, df: pd.DataFrame) -> 'SignalTable':
        """
        Build from a long table with sample, chr, pos, strand, count and
        optionally tpm and included columns.

        Positions missing from a sample get zero signal and are included.
        """
        counts = df.pivot(index=COORD_COLS, columns='sample', values='count').fillna(0)
        samples = list(dict.fromkeys(df['sample']))
        counts = counts[samples]
        if 'tpm' in df.columns:
            tpm = df.pivot(index=COORD_COLS, columns='sample', values='tpm').fillna(0.0)[samples]
        else:
            tpm = normalize_to_tpm(counts, samples)
        mask = None
        if 'included' in df.columns:
            mask = (df.pivot(index=COORD_COLS, columns='sample', values='included')
                      .fillna(True).astype(bool)[samples])
        coords = counts.index.to_frame(index=False)
        counts.columns.name = None
        tpm.columns.name = None
        return cls(coords, counts.reset_index(drop=True), tpm.reset_index(drop=True),
                   None if mask is None else mask.reset_index(drop=True))

    @classmethod
    def read(cls, counts_file: Union[str, Path], tpm_file: Optional[Union[str, Path]] = None) -> 'SignalTable':
        """Read tab-delimited wide tables."""
        logger.info(f"Reading CTSS table: {counts_file}")
        counts_df = pd.read_csv(counts_file, sep='\t')
        tpm_df = None
        if tpm_file is not None:
            logger.info(f"Reading normalized CTSS table: {tpm_file}")
            tpm_df = pd.read_csv(tpm_file, sep='\t')
        return cls.from_wide(counts_df, tpm_df)

    @property
    def samples(self) -> List[str]:
        return list(self._counts.columns)

    def __len__(self):
        return len(self._coords)

    def pass_threshold_mask(self, threshold: float, nr_pass_threshold: int = 1,
                            threshold_is_tpm: bool = True) -> pd.Series:
        """
        Positions whose signal is >= threshold in at least nr_pass_threshold
        samples (capped at the number of samples). Raw counts are used when
        threshold_is_tpm is False. A threshold of 0 passes every position.
        """
        if threshold == 0:
            return pd.Series(True, index=self._coords.index)
        values = self._tpm if threshold_is_tpm else self._counts
        nr_pass = (values >= threshold).sum(axis=1)
        return nr_pass >= min(nr_pass_threshold, len(self.samples))

    def with_mask(self, mask: Union[pd.Series, pd.DataFrame]) -> 'SignalTable':
        """New table whose inclusion mask is the current one AND mask."""
        if isinstance(mask, pd.Series):
            mask = pd.DataFrame({s: mask.to_numpy(dtype=bool) for s in self.samples}, index=self._mask.index)
        combined = self._mask & mask.reset_index(drop=True)[self.samples].astype(bool)
        return SignalTable(self._coords, self._counts, self._tpm, combined)

    def sample_ctss(self, sample: str, included_only: bool = True) -> pd.DataFrame:
        """
        CTSS observed in one sample (count or signal above zero), sorted by
        chromosome, strand and position.

        Returns a DataFrame with chr, pos, strand, count, tpm and included.
        """
        if sample not in self._counts.columns:
            raise DataError(f"Sample not found; available: {self.samples}", sample=sample)
        df = self._coords.copy()
        df['count'] = self._counts[sample].to_numpy()
        df['tpm'] = self._tpm[sample].to_numpy()
        df['included'] = self._mask[sample].to_numpy()
        observed = (df['count'] > 0) | (df['tpm'] > 0)
        if included_only:
            observed &= df['included']
        return sort_ctss(df[observed])

    def counts_frame(self) -> pd.DataFrame:
        """Wide raw-count table (chr, pos, strand, samples)."""
        return pd.concat([self._coords, self._counts], axis=1)

    def tpm_frame(self) -> pd.DataFrame:
        """Wide normalized table (chr, pos, strand, samples)."""
        return pd.concat([self._coords, self._tpm], axis=1)

    def library_sizes(self) -> pd.Series:
        return self._counts.sum(axis=0)

    def n_included(self) -> pd.Series:
        """Number of included positions with signal, per sample."""
        observed = (self._counts > 0) | (self._tpm > 0)
        return (observed & self._mask).sum(axis=0).astype(np.int64)
