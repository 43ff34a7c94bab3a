import dataclasses
import enum
import typing as t
from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt
import polars as pl
from astropy import units as u

from .chemistry import species_mass
from .config import log, _MAX_N_COLL_PART
from .constants import CLIGHT, HPLANCK, planck


class CollisionPartnerId(enum.IntEnum):
    """Collision partner numbering used by LAMDA rate files."""
    H2 = 1
    P_H2 = 2
    O_H2 = 3
    ELECTRON = 4
    H = 5
    HE = 6
    H_PLUS = 7


@dataclass
class CollisionPartner:
    """
    Downward collision rate coefficients of one partner, tabulated against kinetic temperature.

    ``lower`` and ``upper`` are 0-based level indices; ``down_rates[k, i]`` is the rate coefficient of transition ``k``
    at ``temperatures[i]`` in m^3 s^-1. ``density_index`` is the index of the model density feeding this partner, or
    -1 until :func:`assign_collision_partners` has been run.
    """
    partner_id: CollisionPartnerId
    temperatures: npt.NDArray[np.float64]
    lower: npt.NDArray[np.int64]
    upper: npt.NDArray[np.int64]
    down_rates: npt.NDArray[np.float64]
    density_index: int = -1

    def __post_init__(self):
        self.partner_id = CollisionPartnerId(self.partner_id)
        self.temperatures = np.asarray(self.temperatures, dtype=np.float64)
        self.lower = np.asarray(self.lower, dtype=np.int64)
        self.upper = np.asarray(self.upper, dtype=np.int64)
        self.down_rates = np.atleast_2d(np.asarray(self.down_rates, dtype=np.float64))
        if self.temperatures.ndim != 1 or len(self.temperatures) == 0:
            raise ValueError(f"{self.partner_id.name}: temperature grid must be a non-empty 1D array.")
        if np.any(np.diff(self.temperatures) <= 0):
            raise ValueError(f"{self.partner_id.name}: temperature grid must be strictly increasing.")
        if self.down_rates.shape != (len(self.lower), len(self.temperatures)) or len(self.lower) != len(self.upper):
            raise ValueError(
                f"{self.partner_id.name}: rate table shape {self.down_rates.shape} does not match "
                f"{len(self.lower)} transitions x {len(self.temperatures)} temperatures."
            )
        if np.any(self.down_rates < 0):
            raise ValueError(f"{self.partner_id.name}: negative collision rates.")

    @property
    def ntrans(self) -> int:
        return len(self.lower)

    @classmethod
    def from_frame(
            cls,
            partner_id: int | CollisionPartnerId,
            frame: pl.DataFrame,
            temperatures: npt.ArrayLike,
            rate_unit: u.Unit = u.cm ** 3 / u.s,
    ) -> "CollisionPartner":
        """
        Build a partner from a rate table in the layout of a LAMDA file.

        Args:
            partner_id: LAMDA partner id.
            frame: Columns ``upper`` and ``lower`` (1-based level numbers), followed by one rate column per
                temperature, in the order of ``temperatures``.
            temperatures: Temperature grid in K.
            rate_unit: Unit of the rate columns.
        """
        rate_cols = [col for col in frame.columns if col not in ("upper", "lower", "transition")]
        rates = (frame.select(rate_cols).to_numpy().astype(np.float64) << rate_unit).to(u.m ** 3 / u.s).value
        return cls(
            partner_id=CollisionPartnerId(partner_id),
            temperatures=np.asarray(temperatures, dtype=np.float64),
            lower=frame["lower"].to_numpy().astype(np.int64) - 1,
            upper=frame["upper"].to_numpy().astype(np.int64) - 1,
            down_rates=rates,
        )


def _freeze(*arrays: npt.NDArray) -> None:
    for arr in arrays:
        arr.setflags(write=False)


@dataclass
class MolecularData:
    """
    Level structure, radiative and collisional data of one radiating species.

    Attributes:
        name: Species name; used to derive ``amass`` when it is not given.
        energies: Level energies in cm^-1.
        weights: Statistical weights.
        upper: Upper level (0-based) of each line.
        lower: Lower level (0-based) of each line.
        a_einstein: Einstein A coefficients in s^-1.
        freq: Line rest frequencies in Hz.
        partners: Collision partners.
        amass: Molecular mass in amu.
        beinstu: Einstein B_ul in m^2 J^-1 s^-1 Hz sr (derived).
        beinstl: Einstein B_lu (derived).
    """
    name: str
    energies: npt.NDArray[np.float64]
    weights: npt.NDArray[np.float64]
    upper: npt.NDArray[np.int64]
    lower: npt.NDArray[np.int64]
    a_einstein: npt.NDArray[np.float64]
    freq: npt.NDArray[np.float64]
    partners: t.List[CollisionPartner] = field(default_factory=list)
    amass: float | None = None
    beinstu: npt.NDArray[np.float64] = field(init=False, repr=False)
    beinstl: npt.NDArray[np.float64] = field(init=False, repr=False)

    def __post_init__(self):
        self.energies = np.array(self.energies, dtype=np.float64)
        self.weights = np.array(self.weights, dtype=np.float64)
        self.upper = np.array(self.upper, dtype=np.int64)
        self.lower = np.array(self.lower, dtype=np.int64)
        self.a_einstein = np.array(self.a_einstein, dtype=np.float64)
        self.freq = np.array(self.freq, dtype=np.float64)
        self.partners = list(self.partners)

        if len(self.energies) != len(self.weights) or len(self.energies) < 2:
            raise ValueError(f"{self.name}: need at least two levels with one weight each.")
        if np.any(self.weights <= 0):
            raise ValueError(f"{self.name}: statistical weights must be positive.")
        nline = len(self.a_einstein)
        if not (len(self.upper) == len(self.lower) == len(self.freq) == nline):
            raise ValueError(f"{self.name}: line arrays differ in length.")
        for arr in (self.upper, self.lower):
            if np.any(arr < 0) or np.any(arr >= self.nlev):
                raise ValueError(f"{self.name}: line level index out of range.")
        if np.any(self.freq <= 0):
            raise ValueError(f"{self.name}: line frequencies must be positive.")
        for partner in self.partners:
            if np.any(partner.upper >= self.nlev) or np.any(partner.lower >= self.nlev):
                raise ValueError(f"{self.name}: {partner.partner_id.name} rates refer to missing levels.")

        if self.amass is None:
            self.amass = species_mass(self.name)
            if self.amass is None:
                raise ValueError(f"{self.name}: molecular mass must be given explicitly.")

        self.beinstu = self.a_einstein * CLIGHT ** 2 / (2.0 * HPLANCK * self.freq ** 3)
        self.beinstl = self.weights[self.upper] / self.weights[self.lower] * self.beinstu

        _freeze(self.energies, self.weights, self.upper, self.lower, self.a_einstein, self.freq, self.beinstu,
                self.beinstl)

    @property
    def nlev(self) -> int:
        return len(self.energies)

    @property
    def nline(self) -> int:
        return len(self.a_einstein)

    @property
    def npart(self) -> int:
        return len(self.partners)

    def background(self, tcmb: float) -> npt.NDArray[np.float64]:
        """Background intensity at each line frequency; zero when ``tcmb <= 0``."""
        return planck(self.freq, tcmb)

    def lines_frame(self) -> pl.DataFrame:
        return pl.DataFrame({
            "line": np.arange(self.nline),
            "upper": self.upper,
            "lower": self.lower,
            "a_einstein": self.a_einstein,
            "freq": self.freq,
            "beinstu": self.beinstu,
            "beinstl": self.beinstl,
        })

    @classmethod
    def from_frames(
            cls,
            name: str,
            levels: pl.DataFrame,
            lines: pl.DataFrame,
            partners: t.Dict[int, t.Tuple[npt.ArrayLike, pl.DataFrame]] | None = None,
            freq_unit: u.Unit = u.GHz,
            rate_unit: u.Unit = u.cm ** 3 / u.s,
            amass: float | None = None,
    ) -> "MolecularData":
        """
        Build molecular data from tables laid out as in a LAMDA file.

        :param name: Species name.
        :param levels: Columns ``level`` (1-based), ``energy`` (cm^-1) and ``weight``.
        :param lines: Columns ``upper``, ``lower`` (1-based), ``a_einstein`` (s^-1) and optionally ``freq``. Missing
            frequencies are derived from the level energies.
        :param partners: Partner id mapped to its temperature grid and rate frame (see
            :meth:`CollisionPartner.from_frame`).
        :param freq_unit: Unit of the ``freq`` column.
        :param rate_unit: Unit of the collision rates.
        :param amass: Molecular mass in amu.
        :return: The molecular data.
        """
        levels = levels.sort("level")
        energies = levels["energy"].to_numpy()
        upper = lines["upper"].to_numpy().astype(np.int64) - 1
        lower = lines["lower"].to_numpy().astype(np.int64) - 1
        if "freq" in lines.columns:
            freq = (lines["freq"].to_numpy() << freq_unit).to(u.Hz).value
        else:
            freq = ((energies[upper] - energies[lower]) << 1 / u.cm).to(u.Hz, equivalencies=u.spectral()).value
        partner_list = [
            CollisionPartner.from_frame(partner_id, frame, temps, rate_unit=rate_unit)
            for partner_id, (temps, frame) in (partners or {}).items()
        ]
        return cls(
            name=name,
            energies=energies,
            weights=levels["weight"].to_numpy(),
            upper=upper,
            lower=lower,
            a_einstein=lines["a_einstein"].to_numpy(),
            freq=freq,
            partners=partner_list,
            amass=amass,
        )


def assign_collision_partners(
        molecules: t.Sequence[MolecularData],
        n_densities: int,
        coll_part_ids: t.Sequence[int] | None = None,
) -> t.List[MolecularData]:
    """
    Map each collision partner of each molecule onto a model density.

    With ``coll_part_ids``, density ``i`` feeds the partner with id ``coll_part_ids[i]``. Without it, density ``i``
    feeds partner ``i`` in file order. Partners without a density are dropped with a warning.

    Returns copies of the molecules with ``density_index`` set on every remaining partner.
    """
    density_of_partner: t.Dict[CollisionPartnerId, int] = {}
    if coll_part_ids is not None:
        if len(coll_part_ids) != n_densities:
            raise ValueError(
                f"{len(coll_part_ids)} collision partner ids given for {n_densities} densities."
            )
        density_of_partner = {CollisionPartnerId(pid): i for i, pid in enumerate(coll_part_ids)}
        if len(density_of_partner) != len(coll_part_ids):
            raise ValueError(f"Duplicate collision partner ids {coll_part_ids}.")
    if n_densities > _MAX_N_COLL_PART:
        raise ValueError(f"At most {_MAX_N_COLL_PART} densities are supported (got {n_densities}).")

    assigned = []
    for mol in molecules:
        kept = []
        for part_idx, partner in enumerate(mol.partners):
            if coll_part_ids is None:
                dens_idx = part_idx if part_idx < n_densities else -1
            else:
                dens_idx = density_of_partner.get(partner.partner_id, -1)
            if dens_idx < 0:
                log.warning(f"{mol.name}: no density supplied for collision partner {partner.partner_id.name}; dropped.")
                continue
            kept.append(dataclasses.replace(partner, density_index=dens_idx))
        if len(kept) == 0 and mol.npart > 0:
            log.warning(f"{mol.name}: no collision partner matched a density; populations are radiatively driven.")
        assigned.append(dataclasses.replace(mol, partners=kept))
    return assigned


@dataclass(frozen=True)
class Blend:
    """A line of ``species`` lying ``delta_v`` (m/s) away from the line it is attached to."""
    species: int
    line: int
    delta_v: float


@dataclass
class BlendInfo:
    blends: t.Dict[t.Tuple[int, int], t.List[Blend]] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return len(self.blends) > 0

    def for_line(self, species: int, line: int) -> t.List[Blend]:
        return self.blends.get((species, line), [])

    def flatten(
            self, line_offsets: npt.NDArray[np.int64]
    ) -> t.Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64], npt.NDArray[np.float64]]:
        """
        Compressed-row form for kernels, indexed by global line number ``line_offsets[species] + line``.

        :return: ``(ptr, blend_line, delta_v)``; the blends of global line ``g`` are
            ``blend_line[ptr[g]:ptr[g + 1]]`` with shifts ``delta_v[ptr[g]:ptr[g + 1]]``.
        """
        n_total = int(line_offsets[-1])
        counts = np.zeros(n_total, dtype=np.int64)
        for (species, line), blends in self.blends.items():
            counts[line_offsets[species] + line] = len(blends)
        ptr = np.zeros(n_total + 1, dtype=np.int64)
        np.cumsum(counts, out=ptr[1:])
        blend_line = np.empty(ptr[-1], dtype=np.int64)
        delta_v = np.empty(ptr[-1], dtype=np.float64)
        for (species, line), blends in self.blends.items():
            start = ptr[line_offsets[species] + line]
            for k, blend in enumerate(blends):
                blend_line[start + k] = line_offsets[blend.species] + blend.line
                delta_v[start + k] = blend.delta_v
        return ptr, blend_line, delta_v


def line_offsets(molecules: t.Sequence[MolecularData]) -> npt.NDArray[np.int64]:
    """Global index of the first line of each species; the last entry is the total line count."""
    return np.concatenate(([0], np.cumsum([mol.nline for mol in molecules]))).astype(np.int64)


def line_blend(molecules: t.Sequence[MolecularData], max_delta_v: float) -> BlendInfo:
    """
    Find every pair of lines (within or across species) closer than ``max_delta_v`` in velocity.

    A photon at velocity ``v`` in the frame of line ``i`` is at ``v + delta_v`` in the frame of blended line ``j``,
    with ``delta_v = c (f_j - f_i) / f_i``.
    """
    info = BlendInfo()
    for si, mol_i in enumerate(molecules):
        for li in range(mol_i.nline):
            f_i = mol_i.freq[li]
            found = []
            for sj, mol_j in enumerate(molecules):
                delta_v = CLIGHT * (mol_j.freq - f_i) / f_i
                for lj in np.nonzero(np.abs(delta_v) < max_delta_v)[0]:
                    if sj == si and lj == li:
                        continue
                    found.append(Blend(species=sj, line=int(lj), delta_v=float(delta_v[lj])))
            if found:
                info.blends[(si, li)] = found
    if info:
        log.info(f"Found {len(info.blends)} blended lines within {max_delta_v} m/s.")
    return info
