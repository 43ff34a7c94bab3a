import typing as t
from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt
import polars as pl

from .config import log, RunConfig, _N_RAN_PER_SEGMENT
from .constants import AMU, KBOLTZ, planck
from .mesh import Mesh
from .moldata import CollisionPartnerId, MolecularData, assign_collision_partners, line_offsets
from .stateq import VertexConditions, collision_interpolation, line_coefficient_factors, lte_populations

# Mean mass of a gas particle per hydrogen molecule, in amu, used to turn a gas density into a dust mass density.
_MEAN_PARTICLE_AMU = 2.4
_DEFAULT_GAS_TO_DUST = 100.0
_H2_PARTNERS = (CollisionPartnerId.H2, CollisionPartnerId.P_H2, CollisionPartnerId.O_H2)


@dataclass
class PhysicalModel:
    """
    The user model, evaluated at vertex positions (m).

    Attributes:
        density: Number densities (m^-3) of the collision partners.
        temperature: ``(t_kin, t_dust)`` in K; a non-positive dust temperature means ``t_kin``.
        abundance: Abundance of each radiating species relative to the weighted total density.
        doppler: Turbulent Doppler b parameter (m/s).
        velocity: Bulk velocity (m/s).
        magfield: Magnetic field (any unit; only its direction matters). Zero when not given.
        gas_to_dust: Gas-to-dust mass ratio. 100 when not given.
        dust_opacity: Dust mass opacity (m^2 kg^-1) at an array of frequencies (Hz). No dust when not given.
    """
    density: t.Callable[[float, float, float], t.Sequence[float]]
    temperature: t.Callable[[float, float, float], t.Sequence[float]]
    abundance: t.Callable[[float, float, float], t.Sequence[float]]
    doppler: t.Callable[[float, float, float], float]
    velocity: t.Callable[[float, float, float], t.Sequence[float]]
    magfield: t.Callable[[float, float, float], t.Sequence[float]] | None = None
    gas_to_dust: t.Callable[[float, float, float], float] | None = None
    dust_opacity: t.Callable[[npt.NDArray[np.float64]], npt.NDArray[np.float64]] | None = None


@dataclass
class SpeciesPopulations:
    """Per-vertex arena of one radiating species; rows are vertices."""
    pops: npt.NDArray[np.float64]
    knu: npt.NDArray[np.float64]
    dust: npt.NDArray[np.float64]
    dopb: npt.NDArray[np.float64]
    binv: npt.NDArray[np.float64]
    nmol: npt.NDArray[np.float64]
    partner_dens: npt.NDArray[np.float64]
    t_binlow: npt.NDArray[np.int64]
    interp_coeff: npt.NDArray[np.float64]


@dataclass(frozen=True)
class GridVertex:
    id: int
    x: npt.NDArray[np.float64]
    vel: npt.NDArray[np.float64]
    B: npt.NDArray[np.float64]
    sink: bool
    num_neigh: int
    nphot: int
    conv: bool
    dens: npt.NDArray[np.float64]
    t: npt.NDArray[np.float64]
    abun: npt.NDArray[np.float64]
    dopb_turb: float


@dataclass(frozen=True)
class Population:
    pops: npt.NDArray[np.float64]
    knu: npt.NDArray[np.float64]
    dust: npt.NDArray[np.float64]
    dopb: float
    binv: float
    nmol: float

    @property
    def level_densities(self) -> npt.NDArray[np.float64]:
        """Number density (m^-3) of each level."""
        return self.pops * self.nmol


@dataclass(frozen=True)
class LineCoefficients:
    """
    Snapshot of line and continuum coefficients over every line of every species (global line numbering).

    Line coefficients exclude the profile factor; multiply by the Gaussian profile at the photon's velocity.
    """
    jcoef: npt.NDArray[np.float64]
    acoef: npt.NDArray[np.float64]
    knu: npt.NDArray[np.float64]
    dust: npt.NDArray[np.float64]
    binv: npt.NDArray[np.float64]
    line_species: npt.NDArray[np.int64]
    offsets: npt.NDArray[np.int64]
    background: npt.NDArray[np.float64]


def _default_weights(ids: t.Sequence[int] | None, n_densities: int) -> npt.NDArray[np.float64]:
    if ids is None:
        return np.ones(n_densities)
    return np.array([1.0 if CollisionPartnerId(pid) in _H2_PARTNERS else 0.0 for pid in ids])


def _weights(given: t.Sequence[float] | None, ids: t.Sequence[int] | None, n_densities: int,
             label: str) -> npt.NDArray[np.float64]:
    weights = _default_weights(ids, n_densities) if given is None else np.asarray(given, dtype=np.float64)
    if len(weights) != n_densities:
        raise ValueError(f"{len(weights)} {label} weights given for {n_densities} densities.")
    if weights.sum() <= 0:
        raise ValueError(f"{label} weights must not all be zero.")
    return weights


@dataclass
class Grid:
    """Mesh plus the physical state at every vertex."""
    mesh: Mesh
    molecules: t.List[MolecularData]
    config: RunConfig
    density: npt.NDArray[np.float64]
    temperature: npt.NDArray[np.float64]
    abundance: npt.NDArray[np.float64]
    dopb_turb: npt.NDArray[np.float64]
    velocity: npt.NDArray[np.float64]
    magfield: npt.NDArray[np.float64]
    edge_velocity: npt.NDArray[np.float64]
    species: t.List[SpeciesPopulations]
    nphot: npt.NDArray[np.int64]
    conv: npt.NDArray[np.bool_]
    dust_mass_dens: npt.NDArray[np.float64]
    dust_opacity: t.Callable[[npt.NDArray[np.float64]], npt.NDArray[np.float64]] | None
    restored: npt.NDArray[np.bool_] = field(default=None)

    def __post_init__(self):
        if self.restored is None:
            self.restored = np.zeros(self.n_points, dtype=bool)

    @property
    def n_points(self) -> int:
        return self.mesh.n_points

    @property
    def n_species(self) -> int:
        return len(self.molecules)

    @property
    def line_offsets(self) -> npt.NDArray[np.int64]:
        return line_offsets(self.molecules)

    @classmethod
    def from_model(
            cls, mesh: Mesh, model: PhysicalModel, molecules: t.Sequence[MolecularData], config: RunConfig
    ) -> "Grid":
        """
        Evaluate the model at every vertex and along every edge, and start all populations at LTE.
        """
        n_points = mesh.n_points
        density = np.array([np.atleast_1d(model.density(*x)) for x in mesh.points], dtype=np.float64)
        n_densities = density.shape[1]
        temperature = np.array([np.atleast_1d(model.temperature(*x))[:2] for x in mesh.points], dtype=np.float64)
        if temperature.shape[1] == 1:
            temperature = np.hstack([temperature, temperature])
        temperature[:, 1] = np.where(temperature[:, 1] > 0, temperature[:, 1], temperature[:, 0])
        abundance = np.array([np.atleast_1d(model.abundance(*x)) for x in mesh.points], dtype=np.float64)
        if abundance.shape[1] != len(molecules):
            raise ValueError(f"Model gives {abundance.shape[1]} abundances for {len(molecules)} species.")
        dopb_turb = np.array([model.doppler(*x) for x in mesh.points], dtype=np.float64)
        velocity = np.array([model.velocity(*x) for x in mesh.points], dtype=np.float64).reshape(n_points, 3)
        if model.magfield is not None:
            magfield = np.array([model.magfield(*x) for x in mesh.points], dtype=np.float64).reshape(n_points, 3)
        else:
            magfield = np.zeros((n_points, 3))
        if np.any(density < 0) or np.any(abundance < 0) or np.any(temperature[:, 0] < 0):
            raise ValueError("Model returned negative densities, abundances or temperatures.")

        # Stratified samples along each directed edge, at fractions (j + 1/2) / N of its length.
        fractions = (np.arange(_N_RAN_PER_SEGMENT) + 0.5) / _N_RAN_PER_SEGMENT
        starts = mesh.points[mesh.edge_owner]
        steps = mesh.points[mesh.neigh_idx] - starts
        edge_velocity = np.empty((mesh.n_edges, _N_RAN_PER_SEGMENT, 3))
        for j, frac in enumerate(fractions):
            positions = starts + frac * steps
            edge_velocity[:, j, :] = np.array([model.velocity(*x) for x in positions], dtype=np.float64)

        molecules = assign_collision_partners(molecules, n_densities, config.coll_part_ids)
        nmol_weights = _weights(config.nmol_weights, config.coll_part_ids, n_densities, "molecular density")
        dust_weights = _weights(config.dust_weights, config.coll_part_ids, n_densities, "dust density")
        gas_to_dust = np.array(
            [model.gas_to_dust(*x) if model.gas_to_dust is not None else _DEFAULT_GAS_TO_DUST for x in mesh.points]
        )
        dust_mass_dens = _MEAN_PARTICLE_AMU * AMU / gas_to_dust * (density @ dust_weights)

        species = []
        for s, mol in enumerate(molecules):
            nmol = abundance[:, s] * (density @ nmol_weights)
            dopb = np.sqrt(dopb_turb ** 2 + 2.0 * KBOLTZ * temperature[:, 0] / (mol.amass * AMU))
            if np.any(dopb <= 0):
                raise ValueError(f"{mol.name}: zero line width at some vertex (no turbulence at 0 K).")
            if model.dust_opacity is not None:
                kappa = np.asarray(model.dust_opacity(mol.freq), dtype=np.float64)
                knu = dust_mass_dens[:, None] * kappa[None, :]
                dust = np.array([planck(mol.freq, t_dust) for t_dust in temperature[:, 1]])
            else:
                knu = np.zeros((n_points, mol.nline))
                dust = np.zeros((n_points, mol.nline))

            t_binlow = np.zeros((n_points, mol.npart), dtype=np.int64)
            interp_coeff = np.zeros((n_points, mol.npart))
            partner_dens = np.zeros((n_points, mol.npart))
            for p, partner in enumerate(mol.partners):
                partner_dens[:, p] = density[:, partner.density_index]
                for i in range(n_points):
                    t_binlow[i, p], interp_coeff[i, p] = collision_interpolation(
                        partner.temperatures, temperature[i, 0]
                    )

            pops = np.array([lte_populations(mol, tk) for tk in temperature[:, 0]])
            species.append(SpeciesPopulations(
                pops=pops, knu=knu, dust=dust, dopb=dopb, binv=1.0 / dopb, nmol=nmol, partner_dens=partner_dens,
                t_binlow=t_binlow, interp_coeff=interp_coeff,
            ))

        nphot = np.minimum(config.initial_photons_per_neighbour * mesh.num_neigh, config.max_photons)
        log.info(
            f"Grid of {n_points} vertices for {len(molecules)} species "
            f"({sum(mol.nlev for mol in molecules)} levels, {sum(mol.nline for mol in molecules)} lines)."
        )
        return cls(
            mesh=mesh,
            molecules=list(molecules),
            config=config,
            density=density,
            temperature=temperature,
            abundance=abundance,
            dopb_turb=dopb_turb,
            velocity=velocity,
            magfield=magfield,
            edge_velocity=edge_velocity,
            species=species,
            nphot=nphot.astype(np.int64),
            conv=mesh.sink.copy(),
            dust_mass_dens=dust_mass_dens,
            dust_opacity=model.dust_opacity,
        )

    def vertex(self, i: int) -> GridVertex:
        return GridVertex(
            id=i,
            x=self.mesh.points[i],
            vel=self.velocity[i],
            B=self.magfield[i],
            sink=bool(self.mesh.sink[i]),
            num_neigh=int(self.mesh.num_neigh[i]),
            nphot=int(self.nphot[i]),
            conv=bool(self.conv[i]),
            dens=self.density[i],
            t=self.temperature[i],
            abun=self.abundance[i],
            dopb_turb=float(self.dopb_turb[i]),
        )

    def population(self, i: int, s: int) -> Population:
        sp = self.species[s]
        return Population(
            pops=sp.pops[i], knu=sp.knu[i], dust=sp.dust[i], dopb=float(sp.dopb[i]), binv=float(sp.binv[i]),
            nmol=float(sp.nmol[i]),
        )

    def conditions(self, i: int, s: int) -> VertexConditions:
        sp = self.species[s]
        return VertexConditions(
            temperature=float(self.temperature[i, 0]),
            partner_dens=sp.partner_dens[i],
            t_binlow=sp.t_binlow[i],
            interp_coeff=sp.interp_coeff[i],
        )

    def background(self) -> npt.NDArray[np.float64]:
        """Background intensity at every line in global numbering."""
        return np.concatenate([mol.background(self.config.tcmb) for mol in self.molecules])

    def line_coefficients(self) -> LineCoefficients:
        """Read-only coefficients from the current populations."""
        jcoef, acoef = [], []
        for mol, sp in zip(self.molecules, self.species):
            j_s = np.empty((self.n_points, mol.nline))
            a_s = np.empty((self.n_points, mol.nline))
            for i in range(self.n_points):
                j_s[i], a_s[i] = line_coefficient_factors(mol, sp.pops[i], sp.binv[i], sp.nmol[i])
            jcoef.append(j_s)
            acoef.append(a_s)
        offsets = self.line_offsets
        coeffs = LineCoefficients(
            jcoef=np.hstack(jcoef),
            acoef=np.hstack(acoef),
            knu=np.hstack([sp.knu for sp in self.species]),
            dust=np.hstack([sp.dust for sp in self.species]),
            binv=np.stack([sp.binv for sp in self.species], axis=1),
            line_species=np.repeat(np.arange(self.n_species), np.diff(offsets)),
            offsets=offsets,
            background=self.background(),
        )
        for arr in (coeffs.jcoef, coeffs.acoef, coeffs.knu, coeffs.dust, coeffs.binv, coeffs.line_species,
                    coeffs.offsets, coeffs.background):
            arr.setflags(write=False)
        return coeffs

    def set_boundary_populations(
            self, s: int, pops: npt.ArrayLike, vertices: npt.ArrayLike | None = None
    ) -> None:
        """Set level populations (fractions) of species ``s`` on sink vertices, all of them by default."""
        if vertices is None:
            vertices = np.nonzero(self.mesh.sink)[0]
        vertices = np.atleast_1d(np.asarray(vertices, dtype=np.int64))
        if not np.all(self.mesh.sink[vertices]):
            raise ValueError("Boundary populations can only be set on sink vertices.")
        pops = np.asarray(pops, dtype=np.float64)
        if pops.shape[-1] != self.molecules[s].nlev or np.any(pops < 0):
            raise ValueError(f"Invalid boundary populations for {self.molecules[s].name}.")
        self.species[s].pops[vertices] = pops / pops.sum(axis=-1, keepdims=True)

    def population_snapshot(self) -> pl.DataFrame:
        """Long-format table of every population, for restarting a run."""
        frames = []
        for s, (mol, sp) in enumerate(zip(self.molecules, self.species)):
            frames.append(pl.DataFrame({
                "vertex": np.repeat(np.arange(self.n_points), mol.nlev),
                "species": np.full(self.n_points * mol.nlev, s),
                "level": np.tile(np.arange(mol.nlev), self.n_points),
                "pop": sp.pops.ravel(),
                "conv": np.repeat(self.conv, mol.nlev),
            }))
        return pl.concat(frames)

    def load_population_snapshot(self, frame: pl.DataFrame) -> None:
        """Restore populations and convergence flags written by :meth:`population_snapshot`."""
        frame = frame.sort(["species", "vertex", "level"])
        for s, (mol, sp) in enumerate(zip(self.molecules, self.species)):
            sub = frame.filter(pl.col("species") == s)
            if len(sub) != self.n_points * mol.nlev:
                raise ValueError(
                    f"Snapshot holds {len(sub)} populations of {mol.name}; expected {self.n_points * mol.nlev}."
                )
            sp.pops[:] = sub["pop"].to_numpy().reshape(self.n_points, mol.nlev)
            conv = sub.filter(pl.col("level") == 0)["conv"].to_numpy().astype(bool)
            if s == 0:
                self.conv[:] = conv | self.mesh.sink
            else:
                self.conv &= conv | self.mesh.sink
        self.restored = self.conv & ~self.mesh.sink
        log.info(f"Restored populations; {int(self.restored.sum())} vertices restored as converged.")
