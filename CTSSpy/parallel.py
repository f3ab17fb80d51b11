"""
Parallel execution of independent per-sample tasks.

Each task receives only its own sample's data. Results come back keyed by
sample in input order, whether the tasks ran on a process pool or serially,
so the worker count never changes the outputs.
"""

import logging
from multiprocessing import Pool
from typing import Any, Callable, Dict, Tuple

from CTSSpy.errors import CTSSpyError, ExecutionError

logger = logging.getLogger(__name__)


def _run_task(task: Tuple[Callable, str, Any, str, tuple]):
    func, sample, payload, stage, args = task
    try:
        return func(payload, sample, *args)
    except ExecutionError:
        raise
    except CTSSpyError as e:
        raise ExecutionError(f"{type(e).__name__}: {e.message}", sample=sample, cluster=e.cluster,
                             stage=e.stage or stage) from e
    except Exception as e:
        raise ExecutionError(f"{type(e).__name__}: {e}", sample=sample, stage=stage) from e


def map_samples(func: Callable, payloads: Dict[str, Any], stage: str,
                processes: int = 1, args: tuple = ()) -> Dict[str, Any]:
    """
    Run func(payload, sample, *args) for every sample.

    Args:
        func: module-level function (it must be picklable)
        payloads: sample name -> data for that sample
        stage: name of the step, used in log and error messages
        processes: worker pool size; 1 runs the tasks in this process
        args: extra arguments, identical for every sample

    Returns:
        sample name -> result, in the order of payloads

    Raises:
        ExecutionError: the first failing task, naming its sample and stage.
            Remaining tasks are cancelled and no partial results are returned.
    """
    samples = list(payloads)
    tasks = [(func, sample, payloads[sample], stage, args) for sample in samples]
    processes = max(1, min(processes, len(tasks)))

    if processes > 1:
        logger.info(f"{stage}: {len(tasks)} samples on {processes} processes")
        # leaving the context manager terminates outstanding workers
        with Pool(processes=processes) as pool:
            results = list(pool.imap(_run_task, tasks))
    else:
        logger.info(f"{stage}: {len(tasks)} samples serially")
        results = [_run_task(task) for task in tasks]

    return dict(zip(samples, results))
