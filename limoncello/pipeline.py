import typing as t
from dataclasses import dataclass, field

import numpy.typing as npt
import polars as pl

from .config import log, RunConfig
from .grid import Grid, PhysicalModel
from .image import Image, ImageConfig
from .levelpops import ConvergenceDriver, ConvergenceState
from .mesh import Mesh
from .moldata import MolecularData, line_blend
from .parallel import WorkerPool
from .raytrace import RayTracer


@dataclass
class RunResult:
    grid: Grid
    state: ConvergenceState
    history: pl.DataFrame
    images: t.List[Image] = field(default_factory=list)


def run(
        points: npt.ArrayLike,
        model: PhysicalModel,
        molecules: t.Sequence[MolecularData],
        images: t.Sequence[ImageConfig] = (),
        config: RunConfig | None = None,
        sink: npt.ArrayLike | None = None,
        snapshot: pl.DataFrame | None = None,
) -> RunResult:
    """
    Build the mesh and grid, solve the level populations and trace the requested images.

    :param points: Vertex positions (n, 3) in m.
    :param model: Physical model evaluated at the vertices.
    :param molecules: Radiating species.
    :param images: Images to trace once the populations are solved.
    :param config: Run tunables; defaults when not given.
    :param sink: Sink vertices (mask or indices); the convex hull by default.
    :param snapshot: Populations from :meth:`Grid.population_snapshot` to start from.
    :return: The solved grid, the final convergence state and history, and the images.
    """
    config = config if config is not None else RunConfig()
    mesh = Mesh.from_points(points, sink=sink)
    grid = Grid.from_model(mesh, model, molecules, config)
    if snapshot is not None:
        grid.load_population_snapshot(snapshot)
    blend_info = line_blend(grid.molecules, config.max_blend_delta_v) if config.blend else None

    with WorkerPool(config.n_threads, config.seed) as pool:
        driver = ConvergenceDriver(grid, config, blend_info=blend_info)
        state = driver.run(pool)
        log.info(f"Level populations {state.value} after {driver.n_iter} iterations.")

        tracer = RayTracer(grid, config, blend_info=blend_info) if len(images) > 0 else None
        traced = [tracer.trace(image, pool) for image in images]

    return RunResult(grid=grid, state=state, history=driver.history, images=traced)
