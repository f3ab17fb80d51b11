# CTSSpy package init
"""
CTSSpy: Python CLI for CAGE tag clustering

Tag clusters, consensus clusters and quantile-based promoter width from
CAGE transcription start site (CTSS) signal.
"""

__version__ = "0.1.0"

from CTSSpy.config import PipelineConfig
from CTSSpy.errors import ConfigurationError, DataError, ExecutionError
from CTSSpy.pipeline import PipelineResult, run_pipeline
from CTSSpy.signal_table import SignalTable
from CTSSpy.main import app, main

__all__ = [
    'app',
    'main',
    'run_pipeline',
    'PipelineConfig',
    'PipelineResult',
    'SignalTable',
    'ConfigurationError',
    'DataError',
    'ExecutionError',
    '__version__',
]
