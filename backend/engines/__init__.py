from .docker_engine import ComposeSpec, DockerEngine, HealthState, ResourceUsage

__all__ = ["DockerEngine", "ComposeSpec", "HealthState", "ResourceUsage"]
