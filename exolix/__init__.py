"""ExoLiX: feature mapping, embedding jobs and training orchestration for tabular observations."""

__version__ = "0.1.0"
