from stackmap.runtime.base import Runtime
from stackmap.runtime.docker import DockerRuntime
from stackmap.runtime.memory import MemoryRuntime

__all__ = ["DockerRuntime", "MemoryRuntime", "Runtime"]
