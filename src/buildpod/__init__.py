"""
buildpod - build worker execution engine.

Runs one build worker unit either as a pod in the managed cluster or as
a podman container on the local machine, streams its logs, and always
cleans up what it created.

- buildpod.runtimes: unit specs, runners, selector, engine
- buildpod.config: WorkerSettings
- buildpod.cli: the ``buildpod`` command
"""

__version__ = "0.1.0"
