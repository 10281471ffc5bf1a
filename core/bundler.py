"""Preview bundling and exported-symbol summaries.

The bundle is one self-contained file: external imports hoisted and merged,
every module body with its import/export syntax removed, in a fixed order of
data modules, then components, then the app entry.
"""

import os
import posixpath
import re

from config.defaults import DEFAULTS

IMPORT_STMT_RE = re.compile(
    r"""^[ \t]*import\s+(?:type\s+)?(?:([\w$*{}\s,]+?)\s+from\s+)?["']([^"']+)["'];?[ \t]*\n?""",
    re.MULTILINE,
)
NAMED_EXPORT_RE = re.compile(
    r"^[ \t]*export\s+(?:declare\s+)?(?:async\s+)?(?:const|let|var|function\*?|class|interface|type|enum)\s+([A-Za-z_$][\w$]*)",
    re.MULTILINE,
)
EXPORT_LIST_RE = re.compile(r"^[ \t]*export\s*\{([^}]*)\}(?:\s*from\s*[\"'][^\"']+[\"'])?;?[ \t]*\n?", re.MULTILINE)
DEFAULT_DECL_RE = re.compile(
    r"^([ \t]*)export\s+default\s+(?=(?:async\s+)?function\b|class\b)", re.MULTILINE,
)
DEFAULT_NAMED_DECL_RE = re.compile(
    r"^[ \t]*export\s+default\s+(?:async\s+)?(?:function\*?|class)\s+([A-Za-z_$][\w$]*)", re.MULTILINE,
)
DEFAULT_IDENT_RE = re.compile(r"^[ \t]*export\s+default\s+([A-Za-z_$][\w$]*)\s*;?[ \t]*$\n?", re.MULTILINE)
DEFAULT_EXPR_RE = re.compile(r"^([ \t]*)export\s+default\s+", re.MULTILINE)
EXPORT_KEYWORD_RE = re.compile(r"^([ \t]*)export\s+(?=(?:declare\s+)?(?:async\s+)?(?:const|let|var|function|class|interface|type|enum)\b)", re.MULTILINE)

DATA_DIRS = ("/data/", "/lib/", "/utils/", "/hooks/", "/constants/", "/types/")


def _is_local(module):
    return module.startswith((".", "/", "@/"))


def _component_name(path):
    base = os.path.splitext(os.path.basename(path))[0]
    name = re.sub(r"[^\w$]", "", base.title() if not base[:1].isupper() else base)
    return name or "Module"


def default_export_name(path, content):
    match = DEFAULT_NAMED_DECL_RE.search(content)
    if match:
        return match.group(1)
    match = DEFAULT_IDENT_RE.search(content)
    if match and match.group(1) not in ("function", "class", "async"):
        return match.group(1)
    if DEFAULT_EXPR_RE.search(content):
        return _component_name(path)
    return None


def summarize_exports(files):
    """[{path, default, exports}] for each file, without any of its body."""
    summaries = []
    for path, content in files:
        named = []
        for match in NAMED_EXPORT_RE.finditer(content):
            if match.group(1) not in named:
                named.append(match.group(1))
        for match in EXPORT_LIST_RE.finditer(content):
            for part in match.group(1).split(","):
                part = part.strip()
                if part:
                    alias = part.split(" as ")[-1].strip()
                    if alias not in named and alias != "default":
                        named.append(alias)
        summaries.append({
            "path": path,
            "default": default_export_name(path, content),
            "exports": named,
        })
    return summaries


def classify_path(path, app_path=None):
    app_path = app_path or DEFAULTS["app_path"]
    if path == app_path or os.path.basename(path) in ("App.tsx", "App.jsx"):
        return "app"
    if any(segment in path for segment in DATA_DIRS) or path.endswith((".ts", ".js")):
        return "data"
    return "component"


class _ImportTable:
    """Merges external imports by module, first-seen order."""

    def __init__(self):
        self.modules = {}

    def add(self, clause, module):
        entry = self.modules.setdefault(module, {"default": None, "namespace": None, "named": []})
        if not clause:
            return
        clause = clause.replace("\n", " ")
        named = re.search(r"\{([^}]*)\}", clause)
        if named:
            for part in named.group(1).split(","):
                part = re.sub(r"^type\s+", "", part.strip())
                if part and part not in entry["named"]:
                    entry["named"].append(part)
            clause = clause[:named.start()] + clause[named.end():]
        for part in clause.split(","):
            part = part.strip()
            if not part:
                continue
            if part.startswith("*"):
                entry["namespace"] = entry["namespace"] or part
            elif entry["default"] is None:
                entry["default"] = part

    def render(self):
        lines = []
        for module, entry in self.modules.items():
            specs = []
            if entry["default"]:
                specs.append(entry["default"])
            if entry["namespace"]:
                specs.append(entry["namespace"])
            if entry["named"]:
                specs.append("{ " + ", ".join(entry["named"]) + " }")
            if specs:
                lines.append(f"import {', '.join(specs)} from '{module}';")
            else:
                lines.append(f"import '{module}';")
        return lines


def _module_key(path):
    key = os.path.splitext(path)[0]
    if key.endswith("/index"):
        key = key[: -len("/index")]
    return key


def resolve_local(importer, module):
    """Module key a local import specifier points at, relative to the importing file."""
    if module.startswith("@/"):
        target = "/" + module[2:]
    elif module.startswith("/"):
        target = module
    else:
        target = posixpath.normpath(posixpath.join(posixpath.dirname(importer) or "/", module))
    return _module_key(target)


def local_bindings(clause, default_name):
    """`const` lines that keep a local import's names valid once imports are gone.

    A default imported under another name is bound to the target's default
    export, and `{ a as b }` is bound to `a`.
    """
    if not clause:
        return []
    clause = clause.replace("\n", " ")
    bindings = []
    named = re.search(r"\{([^}]*)\}", clause)
    if named:
        for part in named.group(1).split(","):
            part = part.strip()
            if part.startswith("type ") or " as " not in part:
                continue
            source, local = (p.strip() for p in part.split(" as ", 1))
            if source != "default" and source != local:
                bindings.append(f"const {local} = {source};")
            elif source == "default" and default_name and local != default_name:
                bindings.append(f"const {local} = {default_name};")
        clause = clause[:named.start()] + clause[named.end():]
    for part in clause.split(","):
        part = part.strip()
        if part and not part.startswith("*") and default_name and part != default_name:
            bindings.append(f"const {part} = {default_name};")
    return bindings


def strip_module(path, content, imports, defaults=None):
    """Remove import/export syntax from one module, recording external imports.

    `defaults` maps module keys to default export names; local imports that
    rename a symbol get a `const` alias at the top of the body.
    """
    defaults = defaults or {}
    bindings = []

    def take_import(match):
        clause, module = match.group(1), match.group(2)
        if not _is_local(module):
            imports.add(clause, module)
        elif not re.match(r"\s*import\s+type\b", match.group(0)):
            bindings.extend(local_bindings(clause, defaults.get(resolve_local(path, module))))
        return ""

    body = IMPORT_STMT_RE.sub(take_import, content)
    body = EXPORT_LIST_RE.sub("", body)
    body = DEFAULT_DECL_RE.sub(r"\1", body)
    body = DEFAULT_IDENT_RE.sub("", body)
    body = DEFAULT_EXPR_RE.sub(lambda m: f"{m.group(1)}const {_component_name(path)} = ", body)
    body = EXPORT_KEYWORD_RE.sub(r"\1", body)
    body = body.strip("\n")
    if bindings:
        body = "\n".join(bindings) + ("\n\n" + body if body else "")
    return body


def build_bundle(files, app_path=None):
    """Concatenate (path, content) pairs into one preview module.

    Never raises on odd input; sections with no files are left out.
    """
    sections = {"data": [], "component": [], "app": []}
    defaults = {}
    for path, content in files:
        sections[classify_path(path, app_path)].append((path, content))
        name = default_export_name(path, content)
        if name:
            defaults[_module_key(path)] = name

    imports = _ImportTable()
    blocks = []
    entry_name = None
    for kind in ("data", "component", "app"):
        for path, content in sections[kind]:
            body = strip_module(path, content, imports, defaults)
            if not body.strip():
                continue
            blocks.append(f"// {path}\n{body}")
            if kind in ("component", "app"):
                entry_name = default_export_name(path, content) or entry_name

    if sections["app"]:
        entry_name = default_export_name(*sections["app"][-1]) or entry_name

    parts = []
    import_lines = imports.render()
    if import_lines:
        parts.append("\n".join(import_lines))
    parts.extend(blocks)
    if entry_name:
        parts.append(f"export default {entry_name};")
    return "\n\n".join(parts) + "\n" if parts else ""
