"""
Finite-element assembly of the Poisson system

- poisson: stiffness matrix (setCoefficients) and right-hand side (setConstantTerms)
"""

from .poisson import PoissonSystemAssembler, SPLAT_MODES

__all__ = [
    'PoissonSystemAssembler',
    'SPLAT_MODES',
]
