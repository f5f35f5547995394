# svmgate/errors.py


class ConfigError(ValueError):
    """
    Bad configuration or persisted input: empty feature subset, non-positive
    negative weight, malformed state file, unreadable feature-set file.
    Never retried.
    """


class NumericalError(ArithmeticError):
    """
    A training run produced numbers that must not end up in a saved model
    (zero scale, probability outside [0,1], invalid sigmoid, degenerate
    boundary interpolation).
    """
