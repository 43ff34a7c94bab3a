import dataclasses
import enum
import typing as t
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt
from astropy import units as u

_SI_INTENSITY = u.W / (u.m ** 2 * u.Hz * u.sr)


class ImageUnit(enum.Enum):
    KELVIN = "K"
    JANSKY_PER_PIXEL = "Jy/pixel"
    SI = "W/(m2 Hz sr)"
    LSUN_PER_PIXEL = "Lsun/pixel"
    TAU = "tau"


@dataclass(frozen=True)
class ImageConfig:
    """
    One image cube.

    Parameters
    ----------
    pxls : int
        Pixels along each image axis.
    imgres : float
        Pixel size in arcsec.
    distance : float
        Distance to the source in m.
    nchan : int
        Number of velocity channels; continuum images have one.
    velres : float
        Channel width in m/s.
    trans : int
        Line index within ``species`` for a line image; -1 for a continuum image at ``freq``.
    species : int
        Index of the radiating species of a line image.
    source_vel : float
        Systemic velocity of the source in m/s.
    theta, phi : float
        Viewing angles in rad.
    unit : ImageUnit
        Default unit of :meth:`Image.to_unit`.
    freq : float, optional
        Frequency in Hz of a continuum image.
    antialias : int, optional
        Rays per pixel. Taken from the run configuration when not given.
    polarization : bool, optional
        Also compute Stokes Q and U of the dust emission (continuum images only). Taken from the run configuration
        when not given.
    """
    pxls: int
    imgres: float
    distance: float
    nchan: int = 1
    velres: float = 0.0
    trans: int = -1
    species: int = 0
    source_vel: float = 0.0
    theta: float = 0.0
    phi: float = 0.0
    unit: ImageUnit = ImageUnit.KELVIN
    freq: float | None = None
    antialias: int | None = None
    polarization: bool | None = None

    def __post_init__(self):
        if self.pxls < 1 or self.nchan < 1 or (self.antialias is not None and self.antialias < 1):
            raise ValueError("pxls, nchan and antialias must be positive.")
        if self.imgres <= 0 or self.distance <= 0:
            raise ValueError("imgres and distance must be positive.")
        if self.is_line:
            if self.nchan > 1 and self.velres <= 0:
                raise ValueError("A multi-channel line image needs a positive velres.")
            if self.polarization:
                raise ValueError("Polarization is only computed for continuum images.")
        elif self.freq is None or self.freq <= 0:
            raise ValueError("A continuum image needs a positive freq.")
        object.__setattr__(self, "unit", ImageUnit(self.unit))

    def resolved(self, antialias: int, polarization: bool) -> "ImageConfig":
        """Copy with an unset ``antialias`` or ``polarization`` taken from the run defaults."""
        return dataclasses.replace(
            self,
            antialias=antialias if self.antialias is None else self.antialias,
            polarization=(polarization and not self.is_line) if self.polarization is None else self.polarization,
        )

    @property
    def is_line(self) -> bool:
        return self.trans >= 0

    @property
    def pixel_size(self) -> float:
        """Pixel side in m at the source."""
        return (self.imgres * u.arcsec).to(u.rad).value * self.distance

    @property
    def pixel_solid_angle(self) -> float:
        return (self.imgres * u.arcsec).to(u.rad).value ** 2

    @property
    def rotation_matrix(self) -> npt.NDArray[np.float64]:
        """Rows: image x axis, image y axis, and the direction towards the observer, in model coordinates."""
        ct, st = np.cos(self.theta), np.sin(self.theta)
        cp, sp = np.cos(self.phi), np.sin(self.phi)
        return np.array([
            [cp, sp, 0.0],
            [-ct * sp, ct * cp, st],
            [st * sp, -st * cp, ct],
        ])

    def channel_velocities(self) -> npt.NDArray[np.float64]:
        """Line-of-sight velocity (m/s, positive receding) at the centre of each channel."""
        return (np.arange(self.nchan) - 0.5 * (self.nchan - 1)) * self.velres - self.source_vel


@dataclass
class Image:
    """
    Result of tracing one :class:`ImageConfig`.

    ``intensity`` and ``tau`` have shape (pxls, pxls, nchan), indexed ``[x, y, channel]``; intensities are in
    W m^-2 Hz^-1 sr^-1 with the background subtracted. ``stokes`` (pxls, pxls, 3) holds I, Q, U of polarised dust
    emission when requested.
    """
    config: ImageConfig
    freq: float
    intensity: npt.NDArray[np.float64]
    tau: npt.NDArray[np.float64]
    stokes: npt.NDArray[np.float64] | None = None
    n_degenerate: int = 0
    n_missed: int = 0

    def to_unit(self, unit: ImageUnit | str | None = None) -> u.Quantity | npt.NDArray[np.float64]:
        """Image in ``unit`` (the configured one by default); optical depth is returned as a plain array."""
        unit = self.config.unit if unit is None else ImageUnit(unit)
        intensity = self.intensity << _SI_INTENSITY
        if unit is ImageUnit.TAU:
            return self.tau
        if unit is ImageUnit.SI:
            return intensity
        if unit is ImageUnit.KELVIN:
            return intensity.to(u.K, equivalencies=u.brightness_temperature(self.freq * u.Hz))
        pixel_flux = (intensity * (self.config.pixel_solid_angle * u.sr)).to(u.Jy)
        if unit is ImageUnit.JANSKY_PER_PIXEL:
            return pixel_flux
        # nu L_nu of the emission in one pixel, for an isotropic source.
        luminosity = 4.0 * np.pi * (self.config.distance * u.m) ** 2 * pixel_flux * (self.freq * u.Hz)
        return luminosity.to(u.L_sun)

    def velocities(self) -> npt.NDArray[np.float64]:
        return self.config.channel_velocities()

    def spectrum(self) -> npt.NDArray[np.float64]:
        """Intensity summed over pixels per channel (SI units times pixels)."""
        return self.intensity.sum(axis=(0, 1))

