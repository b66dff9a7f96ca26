"""Exception types raised by the IHT engines."""

from __future__ import annotations


class NumericalInstabilityError(RuntimeError):
    """A fit produced a non-finite or invalid numerical quantity.

    Raised for non-finite log-likelihoods, non-finite step sizes and
    precision matrices that cannot be made positive definite.  The run
    is aborted immediately; the condition is never retried.
    """
