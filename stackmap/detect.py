import os

import yaml


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'yaml', or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                docs = list(yaml.safe_load_all(fh))
        except (OSError, yaml.YAMLError):
            return "unknown"

        for doc in docs:
            if isinstance(doc, dict) and isinstance(doc.get("resources"), dict):
                return "yaml"

    return "unknown"
