"""Content refresh worker: cycles, pipeline and collaborator clients."""
