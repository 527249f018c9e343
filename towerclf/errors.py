"""Exceptions raised by a tower classifier run. Every one of them aborts the run."""


class TowerClfError(Exception):
    """Base class for run failures."""


class ConfigValidationError(TowerClfError, ValueError):
    """A run parameter is missing, malformed or unsupported."""


class RunEnvironmentError(TowerClfError, OSError):
    """Input or output directories are missing or cannot be created."""


class TrainingFailure(TowerClfError, RuntimeError):
    """Keras failed while compiling or fitting a training stage."""


class ScoringFailure(TowerClfError, RuntimeError):
    """A validation image could not be decoded or scored."""
