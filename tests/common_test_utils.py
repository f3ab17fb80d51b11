import numpy
import pandas

from CTSSpy.clustering import TagCluster
from CTSSpy.signal_table import SignalTable


def make_tag_cluster(sample: str, start: int, end: int, signal: float = 10.0,
                     chrom: str = "chr1", strand: str = "+", cluster_id: int = 1) -> TagCluster:
    """
    TagCluster with members at start and end - 1, for tests that only need
    intervals
    """
    members = (start,) if end - start == 1 else (start, end - 1)
    return TagCluster(
        sample=sample, cluster_id=cluster_id, chromosome=chrom, strand=strand,
        start=start, end=end, member_positions=members, total_signal=signal,
        raw_count=signal, dominant_position=start, dominant_signal=signal
    )


def example_long_table() -> pandas.DataFrame:
    """
    sample A: + strand CTSS at 100, 105, 110, 200 with signal 5, 3, 2, 10
    sample B: + strand CTSS at 105, 114 with signal 4, 6
    """
    return pandas.DataFrame({
        "sample": ["A", "A", "A", "A", "B", "B"],
        "chr": ["chr1"] * 6,
        "pos": [100, 105, 110, 200, 105, 114],
        "strand": ["+"] * 6,
        "count": [5, 3, 2, 10, 4, 6],
        "tpm": [5.0, 3.0, 2.0, 10.0, 4.0, 6.0],
    })


def random_signal_table(num_samples: int = 3, num_ctss: int = 400, seed: int = 0) -> SignalTable:
    """
    Sparse random CTSS on two chromosomes and both strands, grouped into
    bursts so that clustering produces a mix of wide and narrow clusters
    """
    rng = numpy.random.default_rng(seed)
    rows = []
    for chrom in ("chr1", "chr2"):
        for strand in ("+", "-"):
            centers = rng.choice(numpy.arange(1_000, 100_000, 500), size=20, replace=False)
            offsets = rng.integers(-60, 60, size=num_ctss // 4)
            positions = numpy.unique(rng.choice(centers, size=num_ctss // 4) + offsets)
            for pos in positions:
                rows.append((chrom, int(pos), strand))
    coords = pandas.DataFrame(rows, columns=["chr", "pos", "strand"])
    counts = pandas.DataFrame({
        f"S{i}": rng.poisson(2.0, size=len(coords)) * rng.integers(0, 2, size=len(coords))
        for i in range(num_samples)
    })
    return SignalTable.from_wide(pandas.concat([coords, counts], axis=1))
