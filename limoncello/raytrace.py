import math
import typing as t

import numba
import numpy as np
import numpy.typing as npt

from .config import log, RunConfig, _MAXP
from .constants import HPIP, planck
from .errors import GeometryError, RayTraceDegenerate
from .fastexp import exp_neg, gaussline, source_fn
from .grid import Grid
from .image import Image, ImageConfig
from .moldata import BlendInfo
from .parallel import WorkerPool

# Columns of the per-vertex table interpolated along rays; each line adds (n_upper, n_lower, binv).
_COL_VEL = 0
_COL_B = 3
_COL_KNU = 6
_COL_DUST = 7
_N_FIXED_COLS = 8
_N_LINE_COLS = 3

# Sub-steps per Doppler width of line-of-sight velocity change inside a cell.
_STEPS_PER_DOPPLER = 4.0
_MAX_SUB_STEPS = 100
_MIN_DTAU = -30.0


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _face_intersection(
        points: npt.NDArray[np.float64],
        simplices: npt.NDArray[np.int64],
        cell: int,
        face: int,
        r0: npt.NDArray[np.float64],
        direction: npt.NDArray[np.float64],
        face_ids: npt.NDArray[np.int64],
        bary: npt.NDArray[np.float64],
) -> t.Tuple[int, float]:
    """
    Intersect the line ``r0 + s * direction`` with face ``face`` of ``cell``.

    Fills ``face_ids`` with the face's vertices and ``bary`` with the barycentric coordinates of the intersection.
    Returns ``(orientation, s)``: orientation is +1 when the line leaves the cell through the face, -1 when it enters
    and 0 when it runs parallel to it.
    """
    k = 0
    for i in range(4):
        if i != face:
            face_ids[k] = simplices[cell, i]
            k += 1
    a = points[face_ids[0]]
    b = points[face_ids[1]]
    c = points[face_ids[2]]
    opposite = points[simplices[cell, face]]

    e1x, e1y, e1z = b[0] - a[0], b[1] - a[1], b[2] - a[2]
    e2x, e2y, e2z = c[0] - a[0], c[1] - a[1], c[2] - a[2]
    nx = e1y * e2z - e1z * e2y
    ny = e1z * e2x - e1x * e2z
    nz = e1x * e2y - e1y * e2x
    # Outward normal points away from the opposite vertex.
    if nx * (opposite[0] - a[0]) + ny * (opposite[1] - a[1]) + nz * (opposite[2] - a[2]) > 0.0:
        nx, ny, nz = -nx, -ny, -nz

    denom = nx * direction[0] + ny * direction[1] + nz * direction[2]
    if denom == 0.0:
        bary[:] = -np.inf
        return 0, np.inf
    dist = (nx * (a[0] - r0[0]) + ny * (a[1] - r0[1]) + nz * (a[2] - r0[2])) / denom
    orientation = 1 if denom > 0.0 else -1

    p = np.empty(3)
    for i in range(3):
        p[i] = r0[i] + dist * direction[i]
    # Project onto the coordinate plane where the face is largest.
    anx, any_, anz = abs(nx), abs(ny), abs(nz)
    if anx >= any_ and anx >= anz:
        i0, i1 = 1, 2
    elif any_ >= anz:
        i0, i1 = 2, 0
    else:
        i0, i1 = 0, 1
    area = (b[i0] - a[i0]) * (c[i1] - a[i1]) - (c[i0] - a[i0]) * (b[i1] - a[i1])
    bary[0] = ((b[i0] - p[i0]) * (c[i1] - p[i1]) - (c[i0] - p[i0]) * (b[i1] - p[i1])) / area
    bary[1] = ((c[i0] - p[i0]) * (a[i1] - p[i1]) - (a[i0] - p[i0]) * (c[i1] - p[i1])) / area
    bary[2] = 1.0 - bary[0] - bary[1]
    return orientation, dist


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _entry_face(
        points: npt.NDArray[np.float64],
        simplices: npt.NDArray[np.int64],
        hull_faces: npt.NDArray[np.int64],
        r0: npt.NDArray[np.float64],
        direction: npt.NDArray[np.float64],
        epsilon: float,
        face_ids: npt.NDArray[np.int64],
        bary: npt.NDArray[np.float64],
) -> t.Tuple[int, int, float]:
    """Nearest boundary face through which the ray enters the mesh, as ``(cell, face, dist)``; cell -1 if none."""
    best_cell = -1
    best_face = -1
    best_dist = np.inf
    ids = np.empty(3, dtype=np.int64)
    trial = np.empty(3)
    for h in range(hull_faces.shape[0]):
        cell = hull_faces[h, 0]
        face = hull_faces[h, 1]
        orientation, dist = _face_intersection(points, simplices, cell, face, r0, direction, ids, trial)
        if orientation >= 0:
            continue
        if min(trial[0], trial[1], trial[2]) < -epsilon:
            continue
        if dist < best_dist:
            best_cell, best_face, best_dist = cell, face, dist
            face_ids[:] = ids
            bary[:] = trial
    return best_cell, best_face, best_dist


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _interpolate(
        table: npt.NDArray[np.float64], face_ids: npt.NDArray[np.int64], bary: npt.NDArray[np.float64],
        out: npt.NDArray[np.float64],
) -> None:
    for col in range(table.shape[1]):
        out[col] = (bary[0] * table[face_ids[0], col] + bary[1] * table[face_ids[1], col]
                    + bary[2] * table[face_ids[2], col])


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _stokes_factors(values: npt.NDArray[np.float64], rot: npt.NDArray[np.float64]) -> t.Tuple[float, float, float]:
    """Dust emissivity factors for Stokes I, Q, U; the polarisation is perpendicular to the sky-projected field."""
    bx = rot[0, 0] * values[_COL_B] + rot[0, 1] * values[_COL_B + 1] + rot[0, 2] * values[_COL_B + 2]
    by = rot[1, 0] * values[_COL_B] + rot[1, 1] * values[_COL_B + 1] + rot[1, 2] * values[_COL_B + 2]
    bz = rot[2, 0] * values[_COL_B] + rot[2, 1] * values[_COL_B + 1] + rot[2, 2] * values[_COL_B + 2]
    b_sky2 = bx * bx + by * by
    b2 = b_sky2 + bz * bz
    if b2 <= 0.0 or b_sky2 <= 0.0:
        # No field (or a field along the line of sight): unpolarised.
        cos2_gamma = 2.0 / 3.0 if b2 <= 0.0 else 0.0
        return 1.0 - _MAXP * (cos2_gamma - 2.0 / 3.0), 0.0, 0.0
    cos2_gamma = b_sky2 / b2
    cos_2chi = (bx * bx - by * by) / b_sky2
    sin_2chi = 2.0 * bx * by / b_sky2
    return (1.0 - _MAXP * (cos2_gamma - 2.0 / 3.0), -_MAXP * cos_2chi * cos2_gamma,
            -_MAXP * sin_2chi * cos2_gamma)


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _transfer_segment(
        entry: npt.NDArray[np.float64],
        exit_: npt.NDArray[np.float64],
        length: float,
        direction: npt.NDArray[np.float64],
        rot: npt.NDArray[np.float64],
        chan_vel: npt.NDArray[np.float64],
        line_a: npt.NDArray[np.float64],
        line_bu: npt.NDArray[np.float64],
        line_bl: npt.NDArray[np.float64],
        line_dv: npt.NDArray[np.float64],
        polarization: bool,
        use_fast: bool,
        taylor_cutoff: float,
        values: npt.NDArray[np.float64],
        intensity: npt.NDArray[np.float64],
        tau: npt.NDArray[np.float64],
        stokes: npt.NDArray[np.float64],
) -> None:
    n_lines = line_a.shape[0]
    nchan = chan_vel.shape[0]
    n_steps = 1
    if n_lines > 0:
        v_in = entry[0] * direction[0] + entry[1] * direction[1] + entry[2] * direction[2]
        v_out = exit_[0] * direction[0] + exit_[1] * direction[1] + exit_[2] * direction[2]
        binv = max(entry[_N_FIXED_COLS + 2], exit_[_N_FIXED_COLS + 2])
        n_steps = min(max(int(abs(v_out - v_in) * binv * _STEPS_PER_DOPPLER) + 1, 1), _MAX_SUB_STEPS)
    ds = length / n_steps

    for step in range(n_steps):
        frac = (step + 0.5) / n_steps
        for col in range(values.shape[0]):
            values[col] = entry[col] + frac * (exit_[col] - entry[col])
        v_proj = (values[_COL_VEL] * direction[0] + values[_COL_VEL + 1] * direction[1]
                  + values[_COL_VEL + 2] * direction[2])
        knu = values[_COL_KNU]
        dust = values[_COL_DUST]

        for ch in range(nchan):
            jnu = dust * knu
            alpha = knu
            for k in range(n_lines):
                base = _N_FIXED_COLS + _N_LINE_COLS * k
                n_u = values[base]
                n_l = values[base + 1]
                binv = values[base + 2]
                vfac = gaussline(chan_vel[ch] - v_proj + line_dv[k], binv, use_fast)
                factor = vfac * HPIP * binv
                jnu += factor * n_u * line_a[k]
                alpha += factor * (n_l * line_bl[k] - n_u * line_bu[k])
            dtau = max(alpha * ds, _MIN_DTAU)
            remnant, _ = source_fn(dtau, taylor_cutoff)
            intensity[ch] += exp_neg(tau[ch], use_fast) * remnant * jnu * ds
            tau[ch] += dtau

        if polarization:
            fi, fq, fu = _stokes_factors(values, rot)
            dtau = max(knu * ds, _MIN_DTAU)
            remnant, _ = source_fn(dtau, taylor_cutoff)
            weight = exp_neg(stokes[3], use_fast) * remnant * dust * knu * ds
            stokes[0] += weight * fi
            stokes[1] += weight * fq
            stokes[2] += weight * fu
            stokes[3] += dtau


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _trace_ray(
        points: npt.NDArray[np.float64],
        simplices: npt.NDArray[np.int64],
        cell_neighbours: npt.NDArray[np.int64],
        hull_faces: npt.NDArray[np.int64],
        table: npt.NDArray[np.float64],
        r0: npt.NDArray[np.float64],
        direction: npt.NDArray[np.float64],
        rot: npt.NDArray[np.float64],
        chan_vel: npt.NDArray[np.float64],
        line_a: npt.NDArray[np.float64],
        line_bu: npt.NDArray[np.float64],
        line_bl: npt.NDArray[np.float64],
        line_dv: npt.NDArray[np.float64],
        polarization: bool,
        use_fast: bool,
        taylor_cutoff: float,
        epsilon: float,
        intensity: npt.NDArray[np.float64],
        tau: npt.NDArray[np.float64],
        stokes: npt.NDArray[np.float64],
) -> t.Tuple[bool, int]:
    """
    March one ray through the cells, accumulating into ``intensity``, ``tau`` and ``stokes`` (I, Q, U, tau).

    Returns whether the ray entered the mesh and how many cell exits had to be resolved by the tie-break (no exit
    face strictly inside its barycentric bounds).
    """
    n_cols = table.shape[1]
    face_ids = np.empty(3, dtype=np.int64)
    bary = np.empty(3)
    cell, face, dist_in = _entry_face(points, simplices, hull_faces, r0, direction, epsilon, face_ids, bary)
    if cell < 0:
        return False, 0

    entry = np.empty(n_cols)
    exit_ = np.empty(n_cols)
    values = np.empty(n_cols)
    _interpolate(table, face_ids, bary, entry)
    trial_ids = np.empty(3, dtype=np.int64)
    trial = np.empty(3)
    best_ids = np.empty(3, dtype=np.int64)
    best_bary = np.empty(3)

    n_degenerate = 0
    max_crossings = simplices.shape[0] + 1
    for _ in range(max_crossings):
        # Exit through the face the ray leaves by; on ties (edges, vertices, round-off) take the face whose
        # intersection lies furthest inside it.
        exit_face = -1
        exit_dist = 0.0
        best_min = -np.inf
        for k in range(4):
            if k == face:
                continue
            orientation, dist = _face_intersection(points, simplices, cell, k, r0, direction, trial_ids, trial)
            if orientation <= 0:
                continue
            min_bary = min(trial[0], trial[1], trial[2])
            if min_bary > best_min:
                best_min = min_bary
                exit_face = k
                exit_dist = dist
                best_ids[:] = trial_ids
                best_bary[:] = trial
        if exit_face < 0:
            n_degenerate += 1
            break
        if best_min < -epsilon:
            n_degenerate += 1

        _interpolate(table, best_ids, best_bary, exit_)
        _transfer_segment(
            entry, exit_, max(exit_dist - dist_in, 0.0), direction, rot, chan_vel, line_a, line_bu, line_bl,
            line_dv, polarization, use_fast, taylor_cutoff, values, intensity, tau, stokes,
        )

        nxt = cell_neighbours[cell, exit_face]
        if nxt < 0:
            break
        face = -1
        for k in range(4):
            if cell_neighbours[nxt, k] == cell:
                face = k
        cell = nxt
        dist_in = exit_dist
        entry[:] = exit_
    return True, n_degenerate


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _trace_pixels(
        offsets: npt.NDArray[np.float64],
        points: npt.NDArray[np.float64],
        simplices: npt.NDArray[np.int64],
        cell_neighbours: npt.NDArray[np.int64],
        hull_faces: npt.NDArray[np.int64],
        table: npt.NDArray[np.float64],
        rot: npt.NDArray[np.float64],
        start_dist: float,
        chan_vel: npt.NDArray[np.float64],
        line_a: npt.NDArray[np.float64],
        line_bu: npt.NDArray[np.float64],
        line_bl: npt.NDArray[np.float64],
        line_dv: npt.NDArray[np.float64],
        background: float,
        polarization: bool,
        use_fast: bool,
        taylor_cutoff: float,
        epsilon: float,
) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.int64],
             npt.NDArray[np.int64]]:
    """
    Trace every ray of a chunk of pixels. ``offsets[p, a]`` is the image-plane position (m) of ray ``a`` of pixel
    ``p``; results are averaged over the rays of each pixel.
    """
    n_pix = offsets.shape[0]
    n_aa = offsets.shape[1]
    nchan = chan_vel.shape[0]
    intensity = np.zeros((n_pix, nchan))
    tau = np.zeros((n_pix, nchan))
    stokes = np.zeros((n_pix, 3))
    n_entered = np.zeros(n_pix, dtype=np.int64)
    n_degenerate = np.zeros(n_pix, dtype=np.int64)

    direction = np.empty(3)
    r0 = np.empty(3)
    ray_i = np.empty(nchan)
    ray_tau = np.empty(nchan)
    ray_stokes = np.empty(4)
    for i in range(3):
        direction[i] = -rot[2, i]

    for p in range(n_pix):
        for a in range(n_aa):
            for i in range(3):
                r0[i] = offsets[p, a, 0] * rot[0, i] + offsets[p, a, 1] * rot[1, i] + start_dist * rot[2, i]
            ray_i[:] = 0.0
            ray_tau[:] = 0.0
            ray_stokes[:] = 0.0
            entered, degenerate = _trace_ray(
                points, simplices, cell_neighbours, hull_faces, table, r0, direction, rot, chan_vel, line_a, line_bu,
                line_bl, line_dv, polarization, use_fast, taylor_cutoff, epsilon, ray_i, ray_tau, ray_stokes,
            )
            n_degenerate[p] += degenerate
            if entered:
                n_entered[p] += 1
            for ch in range(nchan):
                # Background-subtracted: the background behind the source is removed, and what it absorbs shows.
                intensity[p, ch] += (ray_i[ch] + (math.exp(-ray_tau[ch]) - 1.0) * background) / n_aa
                tau[p, ch] += ray_tau[ch] / n_aa
            for i in range(3):
                stokes[p, i] += ray_stokes[i] / n_aa
    return intensity, tau, stokes, n_entered, n_degenerate


class RayTracer:
    """
    Synthesise images from the populations on a grid.

    The grid must have been built from a Delaunay mesh; rays march from cell to cell through shared faces.
    """

    def __init__(self, grid: Grid, config: RunConfig | None = None, blend_info: BlendInfo | None = None):
        if not grid.mesh.has_cells:
            raise GeometryError("Ray tracing needs a mesh with cells.")
        self.grid = grid
        self.config = config if config is not None else grid.config
        self.blend_info = blend_info
        self.hull_faces = grid.mesh.boundary_faces()

    def vertex_table(
            self, image: ImageConfig
    ) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], float]:
        """
        Per-vertex quantities interpolated along rays, the line constants ``(A, B_ul, B_lu, delta_v)`` as rows of an
        array, and the image frequency.
        """
        grid = self.grid
        lines = []
        if image.is_line:
            if not 0 <= image.species < grid.n_species:
                raise ValueError(f"No species {image.species}.")
            mol = grid.molecules[image.species]
            if image.trans >= mol.nline:
                raise ValueError(f"{mol.name} has no line {image.trans}.")
            freq = float(mol.freq[image.trans])
            knu = grid.species[image.species].knu[:, image.trans]
            dust = grid.species[image.species].dust[:, image.trans]
            lines.append((image.species, image.trans, 0.0))
            if self.config.blend and self.blend_info is not None:
                lines.extend(
                    (b.species, b.line, b.delta_v) for b in self.blend_info.for_line(image.species, image.trans)
                )
        else:
            freq = float(image.freq)
            if grid.dust_opacity is not None:
                kappa = float(np.asarray(grid.dust_opacity(np.array([freq])), dtype=np.float64)[0])
                knu = grid.dust_mass_dens * kappa
                dust = np.array([planck(freq, t_dust) for t_dust in grid.temperature[:, 1]])
            else:
                log.warning("Continuum image requested but the model has no dust opacity; the image is empty.")
                knu = np.zeros(grid.n_points)
                dust = np.zeros(grid.n_points)

        table = np.empty((grid.n_points, _N_FIXED_COLS + _N_LINE_COLS * len(lines)))
        table[:, _COL_VEL:_COL_VEL + 3] = grid.velocity
        table[:, _COL_B:_COL_B + 3] = grid.magfield
        table[:, _COL_KNU] = knu
        table[:, _COL_DUST] = dust
        constants = np.empty((4, len(lines)))
        for k, (s, line, delta_v) in enumerate(lines):
            mol = grid.molecules[s]
            sp = grid.species[s]
            base = _N_FIXED_COLS + _N_LINE_COLS * k
            table[:, base] = sp.pops[:, mol.upper[line]] * sp.nmol
            table[:, base + 1] = sp.pops[:, mol.lower[line]] * sp.nmol
            table[:, base + 2] = sp.binv
            constants[:, k] = (mol.a_einstein[line], mol.beinstu[line], mol.beinstl[line], delta_v)
        return table, constants, freq

    def pixel_offsets(self, image: ImageConfig, pixels: npt.NDArray[np.int64],
                      rng: np.random.Generator) -> npt.NDArray[np.float64]:
        """Image-plane positions (m) of the rays of each pixel; jittered within the pixel when antialiasing."""
        size = image.pixel_size
        ix = pixels // image.pxls
        iy = pixels % image.pxls
        centre = 0.5 * (image.pxls - 1)
        base = np.stack([(ix - centre) * size, (iy - centre) * size], axis=-1)
        if image.antialias == 1:
            return base[:, None, :]
        jitter = (rng.random((len(pixels), image.antialias, 2)) - 0.5) * size
        return base[:, None, :] + jitter

    def trace(self, image: ImageConfig, pool: WorkerPool | None = None) -> Image:
        """
        Trace one image. Antialiasing and polarization fall back to the run configuration when the image leaves
        them unset; the returned image carries the resolved configuration.

        Raises:
            RayTraceDegenerate: no ray of the image entered the mesh.
        """
        image = image.resolved(self.config.antialias, self.config.polarization)
        grid = self.grid
        mesh = grid.mesh
        table, constants, freq = self.vertex_table(image)
        background = float(planck(freq, self.config.tcmb))
        rot = image.rotation_matrix
        chan_vel = image.channel_velocities()
        start_dist = 2.0 * mesh.radius
        polarization = bool(image.polarization)

        def work(chunk: npt.NDArray[np.int64], rng: np.random.Generator):
            return chunk, _trace_pixels(
                self.pixel_offsets(image, chunk, rng), mesh.points, mesh.simplices, mesh.cell_neighbours,
                self.hull_faces, table, rot, start_dist, chan_vel, constants[0].copy(), constants[1].copy(),
                constants[2].copy(), constants[3].copy(), background, polarization, self.config.use_fast_exp,
                self.config.taylor_cutoff, self.config.intersection_epsilon,
            )

        own_pool = pool is None
        if own_pool:
            pool = WorkerPool(self.config.n_threads, self.config.seed)
        try:
            results = pool.map_partitioned(work, np.arange(image.pxls * image.pxls))
        finally:
            if own_pool:
                pool.shutdown()

        intensity = np.zeros((image.pxls * image.pxls, image.nchan))
        tau = np.zeros((image.pxls * image.pxls, image.nchan))
        stokes = np.zeros((image.pxls * image.pxls, 3))
        n_entered = 0
        degenerate = np.zeros(image.pxls * image.pxls, dtype=np.int64)
        for chunk, (c_int, c_tau, c_stokes, c_entered, c_degenerate) in results:
            intensity[chunk] = c_int
            tau[chunk] = c_tau
            stokes[chunk] = c_stokes
            degenerate[chunk] = c_degenerate
            n_entered += int(c_entered.sum())
        for p in np.nonzero(degenerate)[0]:
            log.debug(f"[P{p // image.pxls},{p % image.pxls}] {degenerate[p]} cell exits resolved by tie-break.")
        n_degenerate = int(degenerate.sum())

        n_rays = image.pxls * image.pxls * image.antialias
        if n_entered == 0:
            raise RayTraceDegenerate(f"None of the {n_rays} rays of the image entered the mesh.")
        if n_degenerate > 0:
            log.warning(f"{n_degenerate} cell exits resolved by tie-break over {n_rays} rays.")
        log.info(
            f"Traced {image.pxls}x{image.pxls}x{image.nchan} image at {freq:.6e} Hz "
            f"({n_rays - n_entered} rays missed the mesh)."
        )
        shape = (image.pxls, image.pxls)
        return Image(
            config=image,
            freq=freq,
            intensity=intensity.reshape(shape + (image.nchan,)),
            tau=tau.reshape(shape + (image.nchan,)),
            stokes=stokes.reshape(shape + (3,)) if polarization else None,
            n_degenerate=n_degenerate,
            n_missed=n_rays - n_entered,
        )
