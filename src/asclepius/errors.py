"""Exceptions raised by the classification pipeline.

Collaborators raise these; the classification adapter catches them and turns
them into listener callbacks, so callers of the adapter never see them.
"""

from __future__ import annotations


class ClassifierError(Exception):
    """Base class for classification pipeline failures."""


class ModelLoadError(ClassifierError):
    """The model asset is missing, corrupt, or incompatible with the runtime."""


class ImageDecodeError(ClassifierError):
    """The source image could not be decoded into a pixel buffer."""


class InferenceError(ClassifierError):
    """The model ran but produced no usable output."""
