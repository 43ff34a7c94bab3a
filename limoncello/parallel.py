import typing as t
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import numpy.typing as npt

from .config import log

ResultType = t.TypeVar("ResultType")


class WorkerPool:
    """
    Thread pool with one random stream per worker.

    Work is split into ``n_threads`` contiguous chunks and chunk ``k`` always runs with stream ``k``, so results
    depend only on the seed and the number of threads, not on scheduling. The numba kernels release the GIL.
    """

    def __init__(self, n_threads: int, seed: int):
        if n_threads < 1:
            raise ValueError(f"n_threads must be at least 1 (got {n_threads}).")
        self.n_threads = n_threads
        self.seed = seed
        self._streams = [np.random.default_rng(ss) for ss in np.random.SeedSequence(seed).spawn(n_threads)]
        self._executor = ThreadPoolExecutor(max_workers=n_threads, thread_name_prefix="limoncello")

    def map_partitioned(
            self,
            func: t.Callable[[npt.NDArray[np.int64], np.random.Generator], ResultType],
            indices: npt.ArrayLike,
    ) -> t.List[ResultType]:
        """Run ``func(chunk, rng)`` on every chunk and return the results in chunk order once all have finished."""
        chunks = np.array_split(np.asarray(indices, dtype=np.int64), self.n_threads)
        futures = [
            self._executor.submit(func, chunk, rng) for chunk, rng in zip(chunks, self._streams) if len(chunk) > 0
        ]
        results = [future.result() for future in futures]
        log.debug(f"Completed {len(futures)} chunks over {sum(len(c) for c in chunks)} items.")
        return results

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()
