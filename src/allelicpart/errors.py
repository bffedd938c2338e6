from __future__ import annotations


class AllelicPartError(Exception):
    """Base class for allelicpart errors."""


class MissingParameterError(AllelicPartError, ValueError):
    """A required input (gene cluster, layer, column) is absent."""


class DesignDegenerateError(AllelicPartError, ValueError):
    """The one-hot category design is not of full column rank."""


class PenaltyPathError(AllelicPartError, RuntimeError):
    """The penalized fit could not be carried along the lambda path.

    Most commonly the maximum lambda could not be bounded, which happens with
    separable or otherwise degenerate data. Retrying with the same inputs will
    fail again; change the penalty weights, lambda or family instead.
    """


class FusedLassoError(AllelicPartError, RuntimeError):
    """Every requested fused lasso run failed."""


class ConsensusFailure(AllelicPartError, RuntimeError):
    """Consensus clustering of several partitions did not produce a result."""
