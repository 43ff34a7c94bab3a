import typing as t

from molmass import Formula, FormulaError

from .config import log

SpeciesIdentType = t.Union[str, "SpeciesFormula"]

# LAMDA files name some species with prefixes that are not part of the formula.
_SPIN_PREFIXES = ("p-", "o-", "para-", "ortho-")


class SpeciesFormula(Formula):
    """Represents a particular species."""

    def __init__(self, formula: SpeciesIdentType, *args, **kwargs):
        if isinstance(formula, SpeciesFormula):
            formula = formula.formula
        for prefix in _SPIN_PREFIXES:
            if formula.startswith(prefix):
                formula = formula[len(prefix):]
                break

        super().__init__(formula, *args, **kwargs)

    def __hash__(self) -> int:
        """Hash function. Necessary for sets and dicts."""
        return hash(self.formula)

    def __eq__(self, other):
        """Equality check. Necessary for sets and dicts."""
        if isinstance(other, str):
            return self == SpeciesFormula(other)
        if not isinstance(other, SpeciesFormula):
            return NotImplemented

        return self.composition().asdict() == other.composition().asdict()


def species_mass(name: SpeciesIdentType) -> float | None:
    """
    Molecular mass in amu of a species name, or None when the name is not a parseable formula.

    :param name: Species formula, e.g. ``"CO"``, ``"p-H2O"``.
    :return: Mass in atomic mass units.
    """
    try:
        return SpeciesFormula(name).mass
    except FormulaError:
        log.warning(f"Could not derive a molecular mass from the species name '{name}'.")
        return None
