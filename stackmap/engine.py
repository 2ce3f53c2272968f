import dataclasses
import os
from typing import List, Tuple

from rich.console import Console

from stackmap.config import StackConfig
from stackmap.detect import detect_format
from stackmap.models.resource import Declaration
from stackmap.parsers import terraform, yaml_doc
from stackmap.runtime import DockerRuntime, MemoryRuntime, Runtime
from stackmap.secretgen import RandomProvider, ValueGenerator

console = Console(stderr=True)


def collect_files(paths: Tuple[str, ...]) -> List[str]:
    """Expand directories into file paths."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, dirs, fnames in os.walk(p):
                dirs.sort()
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return files


def load_declarations(file_paths: List[str]) -> List[Declaration]:
    """Parse every supported file; declaration order runs across files."""
    declarations: List[Declaration] = []
    for fp in file_paths:
        fmt = detect_format(fp)
        if fmt == "terraform":
            parsed = terraform.parse_file(fp)
        elif fmt == "yaml":
            parsed = yaml_doc.parse_file(fp)
        else:
            console.print(f"[dim]Skipping unsupported file:[/dim] {fp}")
            continue
        for decl in parsed:
            declarations.append(dataclasses.replace(decl, index=len(declarations)))
    return declarations


def build_runtimes(config: StackConfig) -> List[Runtime]:
    secrets_provider = RandomProvider(ValueGenerator(config.secret_seed))
    if config.runtime == "memory":
        return [secrets_provider, MemoryRuntime()]
    return [secrets_provider, DockerRuntime(binary=config.docker_binary, timeout=config.docker_timeout)]
