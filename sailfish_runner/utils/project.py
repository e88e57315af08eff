"""Helpers that inspect the application project on the host."""

from __future__ import annotations

import os
import re
from typing import Iterable, Optional, Sequence

import yaml

from sailfish_runner.models.project import DeviceTest

_SPEC_NAME_RE = re.compile(r"^Name:\s*(.*?)\s*$")


def find_file(root: str, extension: str) -> Optional[str]:
    """First non-hidden file under *root* ending with *extension*."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for filename in sorted(filenames):
            if filename.endswith(extension) and not filename.startswith("."):
                return os.path.join(dirpath, filename)
    return None


def find_app_name(root: str = ".") -> str:
    """Application name from the RPM ``.spec`` or the ``.yaml`` packaging file."""
    spec_file = find_file(root, ".spec")
    if spec_file:
        with open(spec_file, encoding="utf-8", errors="replace") as fh:
            for line in fh:
                m = _SPEC_NAME_RE.match(line)
                if m:
                    return m.group(1)
    yaml_file = find_file(root, ".yaml")
    if yaml_file:
        with open(yaml_file, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if isinstance(data, dict) and data.get("Name"):
            return str(data["Name"])
    return ""


def select_tests(
    tests: Sequence[DeviceTest],
    name: Optional[str] = None,
    labels: Optional[Iterable[str]] = None,
) -> list[DeviceTest]:
    """Narrow *tests* to the named one and/or those sharing a label."""
    selected = list(tests)
    if name:
        selected = [t for t in selected if t.name == name]
    label_set = {l.strip() for l in (labels or []) if l.strip()}
    if label_set:
        selected = [t for t in selected if label_set & set(t.labels)]
    return selected
