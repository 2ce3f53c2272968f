"""
Docker runtime driven through the ``docker`` CLI.
"""
import json
import logging
import re
import subprocess
from typing import Any, Dict, List, Optional

from stackmap.errors import FatalRuntimeError, TransientRuntimeError
from stackmap.runtime.base import Outputs, Runtime, as_list, as_mapping

logger = logging.getLogger(__name__)

_TRANSIENT_RE = re.compile(
    r"cannot connect to the docker daemon|connection refused|connection reset|i/o timeout"
    r"|tls handshake timeout|context deadline exceeded|too many requests|toomanyrequests"
    r"|temporarily unavailable|service unavailable|502 bad gateway|503|net/http: request canceled",
    re.IGNORECASE,
)
_CONFLICT_RE = re.compile(r"already exists|is already in use|conflict", re.IGNORECASE)
_MISSING_RE = re.compile(r"no such|not found", re.IGNORECASE)

_TRUE = ("1", "true", "yes")


def _truthy(val: Any) -> bool:
    if isinstance(val, str):
        return val.lower() in _TRUE
    return bool(val)


class DockerRuntime(Runtime):
    name = "docker"
    prefixes = ("docker_",)

    def __init__(self, binary: str = "docker", timeout: float = 60):
        self.binary = binary
        self.timeout = timeout

    # ------------------------------------------------------------ plumbing
    def _run(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.binary] + args
        logger.debug("running: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise FatalRuntimeError(f"'{self.binary}' executable not found") from None
        except subprocess.TimeoutExpired:
            raise TransientRuntimeError(f"'{' '.join(cmd)}' timed out after {self.timeout}s") from None
        if check and result.returncode != 0:
            self._raise(cmd, result)
        return result

    @staticmethod
    def _raise(cmd: List[str], result: subprocess.CompletedProcess) -> None:
        message = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
        text = f"{' '.join(cmd[:3])}: {message}"
        if _TRANSIENT_RE.search(message):
            raise TransientRuntimeError(text)
        raise FatalRuntimeError(text)

    def _inspect(self, kind: str, ref: str) -> Optional[Dict[str, Any]]:
        result = self._run([kind, "inspect", ref], check=False)
        if result.returncode != 0:
            if _MISSING_RE.search(result.stderr or ""):
                return None
            self._raise([self.binary, kind, "inspect", ref], result)
        try:
            data = json.loads(result.stdout or "[]")
        except ValueError as exc:
            raise FatalRuntimeError(f"unexpected output from docker {kind} inspect: {exc}") from exc
        if isinstance(data, list):
            return data[0] if data else None
        return data

    def _create_or_adopt(self, kind: str, ref: str, args: List[str]) -> Dict[str, Any]:
        result = self._run(args, check=False)
        if result.returncode != 0:
            if not _CONFLICT_RE.search(result.stderr or ""):
                self._raise([self.binary] + args, result)
            logger.info("%s '%s' already exists, adopting it", kind, ref)
        info = self._inspect(kind, ref)
        if info is None:
            raise TransientRuntimeError(f"{kind} '{ref}' not visible after create")
        return info

    @staticmethod
    def _label_args(attributes: Dict[str, Any]) -> List[str]:
        args: List[str] = []
        for key, value in as_mapping(attributes.get("labels")).items():
            args += ["--label", f"{key}={value}"]
        return args

    # ------------------------------------------------------------ create
    def create(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Outputs:
        handler = getattr(self, f"_create_{resource_type[len('docker_'):]}", None)
        if handler is None:
            raise FatalRuntimeError(f"docker runtime cannot create '{resource_type}'")
        return handler(name, attributes)

    def _create_volume(self, name: str, attributes: Dict[str, Any]) -> Outputs:
        volume = str(attributes.get("name", name))
        args = ["volume", "create"]
        if attributes.get("driver"):
            args += ["--driver", str(attributes["driver"])]
        for key, value in as_mapping(attributes.get("driver_opts")).items():
            args += ["--opt", f"{key}={value}"]
        args += self._label_args(attributes) + [volume]
        info = self._create_or_adopt("volume", volume, args)
        return {"id": info.get("Name", volume), "name": volume, "mountpoint": info.get("Mountpoint", "")}

    def _create_network(self, name: str, attributes: Dict[str, Any]) -> Outputs:
        network = str(attributes.get("name", name))
        args = ["network", "create"]
        if attributes.get("driver"):
            args += ["--driver", str(attributes["driver"])]
        if _truthy(attributes.get("internal", False)):
            args.append("--internal")
        if _truthy(attributes.get("attachable", False)):
            args.append("--attachable")
        args += self._label_args(attributes) + [network]
        info = self._create_or_adopt("network", network, args)
        return {"id": info.get("Id", ""), "name": network}

    def _create_image(self, name: str, attributes: Dict[str, Any]) -> Outputs:
        image = str(attributes.get("name", name))
        self._run(["pull", image])
        info = self._inspect("image", image)
        if info is None:
            raise TransientRuntimeError(f"image '{image}' not present after pull")
        return {"id": info.get("Id", ""), "image_id": info.get("Id", ""), "name": image}

    def _create_container(self, name: str, attributes: Dict[str, Any]) -> Outputs:
        container = str(attributes.get("name", name))
        if not attributes.get("image"):
            raise FatalRuntimeError(f"container '{container}' has no image")

        must_run = _truthy(attributes.get("must_run", True))
        args = ["run", "--detach"] if must_run else ["create"]
        args += ["--name", container]
        if attributes.get("restart"):
            args += ["--restart", str(attributes["restart"])]
        if attributes.get("hostname"):
            args += ["--hostname", str(attributes["hostname"])]
        if attributes.get("user"):
            args += ["--user", str(attributes["user"])]

        env = attributes.get("env") or []
        if isinstance(env, dict):
            env = [f"{k}={v}" for k, v in env.items()]
        for item in as_list(env):
            args += ["--env", str(item)]

        for vol in as_list(attributes.get("volumes")):
            source = vol.get("volume_name") or vol.get("host_path")
            if not source or not vol.get("container_path"):
                raise FatalRuntimeError(f"container '{container}' has an incomplete volumes block")
            spec = f"{source}:{vol['container_path']}"
            if _truthy(vol.get("read_only", False)):
                spec += ":ro"
            args += ["--volume", spec]

        for port in as_list(attributes.get("ports")):
            internal = port.get("internal")
            if internal is None:
                raise FatalRuntimeError(f"container '{container}' has a ports block without 'internal'")
            spec = f"{internal}/{port.get('protocol', 'tcp')}"
            if port.get("external") is not None:
                host = f"{port['ip']}:" if port.get("ip") else ""
                spec = f"{host}{port['external']}:{spec}"
            args += ["--publish", spec]

        args += self._label_args(attributes)

        networks = [n for n in as_list(attributes.get("networks_advanced")) if isinstance(n, dict)]
        if networks:
            args += ["--network", str(networks[0]["name"])]
            for alias in as_list(networks[0].get("aliases")):
                args += ["--network-alias", str(alias)]

        if attributes.get("entrypoint"):
            args += ["--entrypoint", str(as_list(attributes["entrypoint"])[0])]
        args.append(str(attributes["image"]))
        args += [str(c) for c in as_list(attributes.get("command"))]

        info = self._create_or_adopt("container", container, args)

        for extra in networks[1:]:
            connect = ["network", "connect"]
            for alias in as_list(extra.get("aliases")):
                connect += ["--alias", str(alias)]
            result = self._run(connect + [str(extra["name"]), container], check=False)
            if result.returncode != 0 and not _CONFLICT_RE.search(result.stderr or ""):
                self._raise([self.binary] + connect, result)

        return {"id": info.get("Id", ""), "name": container}

    # ------------------------------------------------------------ read
    def read(self, resource_type: str, name: str, outputs: Outputs) -> Optional[Outputs]:
        kind = resource_type[len("docker_"):]
        ref = str(outputs.get("name") or name)
        info = self._inspect(kind, ref)
        if info is None:
            return None
        current = dict(outputs)
        if info.get("Id"):
            current["id"] = info["Id"]
        return current

    # ------------------------------------------------------------ update
    def update(
        self,
        resource_type: str,
        name: str,
        attributes: Dict[str, Any],
        outputs: Outputs,
        changed: List[str],
    ) -> Outputs:
        ref = str(outputs.get("name") or name)
        for attr in changed:
            if resource_type == "docker_container" and attr == "restart":
                self._run(["update", "--restart", str(attributes.get("restart", "no")), ref])
            elif resource_type == "docker_container" and attr == "must_run":
                self._run(["start" if _truthy(attributes.get("must_run", True)) else "stop", ref])
            elif resource_type == "docker_image" and attr == "keep_locally":
                continue
            else:
                raise FatalRuntimeError(f"'{attr}' of {resource_type} cannot be changed in place")
        return dict(outputs)

    # ------------------------------------------------------------ delete
    def delete(self, resource_type: str, name: str, outputs: Outputs, attributes: Dict[str, Any]) -> None:
        ref = str(outputs.get("name") or name)
        if resource_type == "docker_container":
            args = ["container", "rm", "--force", ref]
        elif resource_type == "docker_network":
            args = ["network", "rm", ref]
        elif resource_type == "docker_volume":
            args = ["volume", "rm", ref]
        elif resource_type == "docker_image":
            if _truthy(attributes.get("keep_locally", False)):
                return
            args = ["image", "rm", ref]
        else:
            raise FatalRuntimeError(f"docker runtime cannot delete '{resource_type}'")

        result = self._run(args, check=False)
        if result.returncode != 0:
            if _MISSING_RE.search(result.stderr or ""):
                logger.info("%s '%s' already gone", resource_type, ref)
                return
            self._raise([self.binary] + args, result)
