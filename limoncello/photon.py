import math
import typing as t
from dataclasses import dataclass

import numba
import numpy as np
import numpy.typing as npt

from .config import log, RunConfig, _MAX_PHOT
from .fastexp import exp_neg, gaussline, source_fn
from .grid import Grid, LineCoefficients

# Ray velocity offsets are drawn within this many Doppler widths of the local gas.
_VELOCITY_SPREAD = 4.3
# Lower bound on the optical depth of a half-edge; large negative values come from strong masers.
_MIN_DTAU = -30.0

BlendArrays = t.Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64], npt.NDArray[np.float64]]


@dataclass(frozen=True)
class RadiationSample:
    """
    Rays cast from one vertex. Per-line arrays use global line numbering.

    Attributes:
        phot: Intensity arriving at the end of the origin's half-edge, per ray and line.
        vfac_loc: Line profile factor at the origin for each ray's velocity offset.
        half_first_ds: Length of the origin's half of the first edge of each ray.
        dv_rel: Velocity offset of each ray from the origin's gas (m/s).
        n_rays: Number of rays.
        relative_error: Largest relative standard error of the profile-weighted mean intensity over lines.
    """
    phot: npt.NDArray[np.float64]
    vfac_loc: npt.NDArray[np.float64]
    half_first_ds: npt.NDArray[np.float64]
    dv_rel: npt.NDArray[np.float64]
    n_rays: int
    relative_error: float


@dataclass(frozen=True)
class PhotonBudgetPolicy:
    """Ray budget for the next sweep: unchanged for converged vertices, grown by ``growth`` up to ``max_photons``."""
    growth: float = 2.0
    max_photons: int = _MAX_PHOT

    def next_budget(self, nphot: npt.NDArray[np.int64], converged: npt.NDArray[np.bool_]) -> npt.NDArray[np.int64]:
        grown = np.minimum(np.ceil(nphot * self.growth).astype(np.int64), self.max_photons)
        return np.where(converged, nphot, grown)


def empty_blends(n_lines: int) -> BlendArrays:
    return np.zeros(n_lines + 1, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.float64)


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _half_edge_coefficients(
        owner: int,
        edge: int,
        direction: npt.NDArray[np.float64],
        deltav: float,
        edge_velocity: npt.NDArray[np.float64],
        jcoef: npt.NDArray[np.float64],
        acoef: npt.NDArray[np.float64],
        knu: npt.NDArray[np.float64],
        dust: npt.NDArray[np.float64],
        binv: npt.NDArray[np.float64],
        line_species: npt.NDArray[np.int64],
        blend_ptr: npt.NDArray[np.int64],
        blend_line: npt.NDArray[np.int64],
        blend_dv: npt.NDArray[np.float64],
        use_fast: bool,
        jnu: npt.NDArray[np.float64],
        alpha: npt.NDArray[np.float64],
) -> None:
    n_lines = jcoef.shape[1]
    n_samples = edge_velocity.shape[1]
    for g in range(n_lines):
        jnu[g] = dust[owner, g] * knu[owner, g]
        alpha[g] = knu[owner, g]
    for j in range(n_samples):
        proj = (edge_velocity[edge, j, 0] * direction[0] + edge_velocity[edge, j, 1] * direction[1]
                + edge_velocity[edge, j, 2] * direction[2])
        v_local = deltav - proj
        for g in range(n_lines):
            vfac = gaussline(v_local, binv[owner, line_species[g]], use_fast) / n_samples
            jnu[g] += vfac * jcoef[owner, g]
            alpha[g] += vfac * acoef[owner, g]
            for k in range(blend_ptr[g], blend_ptr[g + 1]):
                b = blend_line[k]
                vfac_b = gaussline(v_local + blend_dv[k], binv[owner, line_species[b]], use_fast) / n_samples
                jnu[g] += vfac_b * jcoef[owner, b]
                alpha[g] += vfac_b * acoef[owner, b]


@numba.njit(cache=True, nogil=True, error_model="numpy")
def _photon_batch(
        origin: int,
        n_rays: int,
        seed: int,
        points: npt.NDArray[np.float64],
        velocity: npt.NDArray[np.float64],
        sink: npt.NDArray[np.bool_],
        neigh_ptr: npt.NDArray[np.int64],
        neigh_idx: npt.NDArray[np.int64],
        edge_dir: npt.NDArray[np.float64],
        edge_velocity: npt.NDArray[np.float64],
        jcoef: npt.NDArray[np.float64],
        acoef: npt.NDArray[np.float64],
        knu: npt.NDArray[np.float64],
        dust: npt.NDArray[np.float64],
        binv: npt.NDArray[np.float64],
        line_species: npt.NDArray[np.int64],
        background: npt.NDArray[np.float64],
        blend_ptr: npt.NDArray[np.int64],
        blend_line: npt.NDArray[np.int64],
        blend_dv: npt.NDArray[np.float64],
        use_fast: bool,
        taylor_cutoff: float,
) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    np.random.seed(seed)
    n_lines = jcoef.shape[1]
    phot = np.zeros((n_rays, n_lines))
    vfac_loc = np.zeros((n_rays, n_lines))
    half_first_ds = np.zeros(n_rays)
    dv_rel = np.zeros(n_rays)
    tau = np.zeros(n_lines)
    jnu = np.zeros(n_lines)
    alpha = np.zeros(n_lines)
    direction = np.zeros(3)

    max_dopb = 0.0
    for s in range(binv.shape[1]):
        max_dopb = max(max_dopb, 1.0 / binv[origin, s])
    x0 = points[origin]

    for r in range(n_rays):
        cos_theta = 2.0 * np.random.random() - 1.0
        phi = 2.0 * math.pi * np.random.random()
        sin_theta = math.sqrt(1.0 - cos_theta * cos_theta)
        direction[0] = sin_theta * math.cos(phi)
        direction[1] = sin_theta * math.sin(phi)
        direction[2] = cos_theta

        dv = (2.0 * np.random.random() - 1.0) * _VELOCITY_SPREAD * max_dopb
        dv_rel[r] = dv
        for g in range(n_lines):
            vfac_loc[r, g] = gaussline(dv, binv[origin, line_species[g]], use_fast)
        # Velocity of the ray in the lab frame; profiles along the path are evaluated relative to the local gas.
        deltav = dv + (velocity[origin, 0] * direction[0] + velocity[origin, 1] * direction[1]
                       + velocity[origin, 2] * direction[2])

        tau[:] = 0.0
        here = origin
        along_here = 0.0
        first = True
        while True:
            # Forward neighbours closest to the track; pick one of the two nearest at random.
            best = -1
            second = -1
            d2_best = np.inf
            d2_second = np.inf
            along_best = 0.0
            along_second = 0.0
            for e in range(neigh_ptr[here], neigh_ptr[here + 1]):
                cos_e = edge_dir[e, 0] * direction[0] + edge_dir[e, 1] * direction[1] + edge_dir[e, 2] * direction[2]
                if cos_e <= 0.0:
                    continue
                nb = neigh_idx[e]
                rx = points[nb, 0] - x0[0]
                ry = points[nb, 1] - x0[1]
                rz = points[nb, 2] - x0[2]
                along = rx * direction[0] + ry * direction[1] + rz * direction[2]
                d2 = rx * rx + ry * ry + rz * rz - along * along
                if d2 < d2_best:
                    second, d2_second, along_second = best, d2_best, along_best
                    best, d2_best, along_best = e, d2, along
                elif d2 < d2_second:
                    second, d2_second, along_second = e, d2, along
            if best < 0:
                break
            edge = best
            along_next = along_best
            if second >= 0 and d2_best + d2_second > 0.0:
                if np.random.random() >= d2_second / (d2_best + d2_second):
                    edge = second
                    along_next = along_second
            nxt = neigh_idx[edge]
            half_ds = 0.5 * max(along_next - along_here, 0.0)

            for half in range(2):
                owner = here if half == 0 else nxt
                if first and half == 0:
                    half_first_ds[r] = half_ds
                    continue
                _half_edge_coefficients(
                    owner, edge, direction, deltav, edge_velocity, jcoef, acoef, knu, dust, binv, line_species,
                    blend_ptr, blend_line, blend_dv, use_fast, jnu, alpha,
                )
                for g in range(n_lines):
                    dtau = max(alpha[g] * half_ds, _MIN_DTAU)
                    remnant, _ = source_fn(dtau, taylor_cutoff)
                    phot[r, g] += exp_neg(tau[g], use_fast) * remnant * jnu[g] * half_ds
                    tau[g] += dtau

            first = False
            here = nxt
            along_here = along_next
            if sink[here]:
                break

        for g in range(n_lines):
            phot[r, g] += exp_neg(tau[g], use_fast) * background[g]

    return phot, vfac_loc, half_first_ds, dv_rel


def _relative_error(phot: npt.NDArray[np.float64], vfac_loc: npt.NDArray[np.float64]) -> float:
    """Largest relative standard error over lines of the profile-weighted mean of ``phot``."""
    wsum = vfac_loc.sum(axis=0)
    w2sum = (vfac_loc ** 2).sum(axis=0)
    valid = wsum > 0
    if not np.any(valid):
        return np.inf
    mean = (vfac_loc * phot).sum(axis=0)[valid] / wsum[valid]
    var = (vfac_loc * phot ** 2).sum(axis=0)[valid] / wsum[valid] - mean ** 2
    n_eff = wsum[valid] ** 2 / w2sum[valid]
    with np.errstate(divide="ignore", invalid="ignore"):
        rel = np.where(mean > 0, np.sqrt(np.clip(var, 0.0, None) / n_eff) / mean, 0.0)
    return float(np.max(rel))


def estimate_radiation(
        grid: Grid,
        coeffs: LineCoefficients,
        vertex: int,
        rng: np.random.Generator,
        blends: BlendArrays | None = None,
        n_rays: int | None = None,
        config: RunConfig | None = None,
) -> RadiationSample:
    """
    Cast rays from ``vertex`` and return the intensities they carry back to it.

    Rays are issued in batches until the vertex's budget is spent or, with a positive ``ray_variance_goal``, until
    the estimate of the mean intensity is precise enough. ``config`` overrides the grid's run configuration.
    """
    config = config if config is not None else grid.config
    mesh = grid.mesh
    budget = int(grid.nphot[vertex] if n_rays is None else n_rays)
    if budget < 1:
        raise ValueError(f"[V{vertex}] Ray budget must be positive (got {budget}).")
    if blends is None:
        blends = empty_blends(coeffs.jcoef.shape[1])
    batch_size = max(config.initial_photons_per_neighbour, budget // 4)

    batches = []
    n_done = 0
    relative_error = np.inf
    while n_done < budget:
        n_batch = min(batch_size, budget - n_done)
        batches.append(_photon_batch(
            vertex, n_batch, int(rng.integers(0, 2 ** 31 - 1)), mesh.points, grid.velocity, mesh.sink,
            mesh.neigh_ptr, mesh.neigh_idx, mesh.dir, grid.edge_velocity, coeffs.jcoef, coeffs.acoef, coeffs.knu,
            coeffs.dust, coeffs.binv, coeffs.line_species, coeffs.background, blends[0], blends[1], blends[2],
            config.use_fast_exp, config.taylor_cutoff,
        ))
        n_done += n_batch
        if config.ray_variance_goal > 0:
            relative_error = _relative_error(
                np.concatenate([b[0] for b in batches]), np.concatenate([b[1] for b in batches])
            )
            if relative_error < config.ray_variance_goal:
                log.debug(f"[V{vertex}] Ray estimate reached relative error {relative_error:.2e} after {n_done} rays.")
                break

    phot, vfac_loc, half_first_ds, dv_rel = (np.concatenate([b[k] for b in batches]) for k in range(4))
    if config.ray_variance_goal <= 0:
        relative_error = _relative_error(phot, vfac_loc)
    return RadiationSample(
        phot=phot, vfac_loc=vfac_loc, half_first_ds=half_first_ds, dv_rel=dv_rel, n_rays=n_done,
        relative_error=relative_error,
    )
