"""Static validator — cheap structural checks on one generated source file.

Runs before any network verification. Checks are ordered and stop at the first
failure:

    1. bracket / paren / brace balance, aware of strings, template literals
       (including `${...}` nesting) and comments
    2. truncation artifacts: code ending on a dangling operator
    3. malformed CSS `url(...)` values with nested parentheses
    4. JSX tag balance in component files
    5. forbidden imports and patterns (config.rules.FORBIDDEN_PATTERNS)
    6. tracked framework symbols used without an import
    7. exactly one `export default` in component files

Pure text analysis. No parser, no I/O.
"""

import re

from config.rules import (
    CODE_EXTENSIONS,
    EXPORT_REQUIRED_EXTENSIONS,
    FORBIDDEN_PATTERNS,
    TRACKED_SYMBOLS,
)
from core.state import ValidationResult

# Scanner modes
_CODE = "code"
_LINE_COMMENT = "line_comment"
_BLOCK_COMMENT = "block_comment"
_SINGLE = "single"
_DOUBLE = "double"
_TEMPLATE = "template"

_OPENERS = {"(": ")", "[": "]", "{": "}", "${": "}"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}

_BALANCE_CATEGORY = {
    "(": "UnbalancedParens", ")": "UnbalancedParens",
    "[": "UnbalancedBrackets", "]": "UnbalancedBrackets",
    "{": "UnbalancedBraces", "}": "UnbalancedBraces", "${": "UnterminatedTemplate",
}

_BALANCE_FIX = {
    "UnbalancedParens": "Close every '(' with a matching ')'; the output may have been cut off mid-expression",
    "UnbalancedBrackets": "Close every '[' with a matching ']'",
    "UnbalancedBraces": "Close every '{' with a matching '}'; check JSX expressions and object literals",
    "UnterminatedString": "Close the string literal with its matching quote",
    "UnterminatedTemplate": "Close the template literal with a backtick and every '${' with '}'",
    "UnterminatedComment": "Close the block comment with '*/'",
}

IMPORT_RE = re.compile(
    r"""^[ \t]*import\s+(?:type\s+)?([\w$*{}\s,]+?)\s+from\s+["']([^"']+)["'];?""",
    re.MULTILINE,
)
EXPORT_DEFAULT_RE = re.compile(r"\bexport\s+default\b")
_WORD = re.compile(r"[\w$]")

TRUNCATION_CHARS = "{([,:=.+-*/"
MALFORMED_URL_RE = re.compile(r"url\([^)]*\([^)]*\)")

_TAG_START_RE = re.compile(r"<(/?)([A-Za-z][\w.]*)")
_TYPE_SUFFIX_RE = re.compile(
    r"(?:Props|State|Type|Config|Options|Params|Args|Result|Data|Item|Entry|Key|"
    r"Value|Ref|Context|Handler|Callback|Fn|Interface)$"
)
# TypeScript names that show up after `<` in generics, never JSX tags
TS_TYPE_NAMES = frozenset({
    "string", "number", "boolean", "any", "void", "never", "null", "undefined",
    "object", "unknown", "bigint", "symbol", "keyof", "typeof", "infer",
    "Record", "Partial", "Required", "Readonly", "Pick", "Omit", "Exclude",
    "Extract", "NonNullable", "ReturnType", "Parameters", "InstanceType",
    "Promise", "Array", "Map", "Set", "WeakMap", "WeakSet",
})
VOID_ELEMENTS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
})


def _line_at(text, index):
    return text.count("\n", 0, index) + 1


def _is_apostrophe(text, i):
    """A quote between two word characters is prose (e.g. JSX text "Don't")."""
    return (
        0 < i < len(text) - 1
        and _WORD.match(text[i - 1]) is not None
        and _WORD.match(text[i + 1]) is not None
    )


def _fail(category, explanation, line=None, pattern="", fix="", severity="error"):
    return ValidationResult(
        passed=False,
        category=category,
        explanation=explanation,
        line=line,
        pattern=pattern,
        fix_suggestion=fix,
        severity=severity,
    )


def scan(text):
    """Walk the text once, tracking string/comment state and open brackets.

    Returns (failure_or_None, stripped) where `stripped` is the same length as
    `text` with string, template and comment contents blanked to spaces
    (newlines kept), for the pattern checks that must not see literal text.
    """
    out = list(text)
    stack = []          # (opener, line)
    mode = _CODE
    mode_line = 1       # where the current string/comment started
    line = 1
    i = 0
    n = len(text)

    def blank(j):
        if out[j] != "\n":
            out[j] = " "

    while i < n:
        c = text[i]
        nxt = text[i + 1] if i + 1 < n else ""

        if mode == _LINE_COMMENT:
            if c == "\n":
                mode = _CODE
                line += 1
            else:
                blank(i)
            i += 1
            continue

        if mode == _BLOCK_COMMENT:
            if c == "*" and nxt == "/":
                mode = _CODE
                blank(i)
                blank(i + 1)
                i += 2
                continue
            if c == "\n":
                line += 1
            blank(i)
            i += 1
            continue

        if mode in (_SINGLE, _DOUBLE):
            quote = "'" if mode == _SINGLE else '"'
            if c == "\\":
                blank(i)
                if nxt:
                    if nxt == "\n":
                        line += 1
                    blank(i + 1)
                i += 2
                continue
            if c == quote:
                mode = _CODE
            else:
                if c == "\n":
                    line += 1
                blank(i)
            i += 1
            continue

        if mode == _TEMPLATE:
            if c == "\\":
                blank(i)
                if nxt:
                    if nxt == "\n":
                        line += 1
                    blank(i + 1)
                i += 2
                continue
            if c == "`":
                mode = _CODE
                i += 1
                continue
            if c == "$" and nxt == "{":
                stack.append(("${", line))
                mode = _CODE
                i += 2
                continue
            if c == "\n":
                line += 1
            blank(i)
            i += 1
            continue

        # _CODE
        if c == "\n":
            line += 1
        elif c == "/" and nxt == "/":
            mode, mode_line = _LINE_COMMENT, line
            blank(i)
            blank(i + 1)
            i += 2
            continue
        elif c == "/" and nxt == "*":
            mode, mode_line = _BLOCK_COMMENT, line
            blank(i)
            blank(i + 1)
            i += 2
            continue
        elif c == "'" and not _is_apostrophe(text, i):
            mode, mode_line = _SINGLE, line
        elif c == '"':
            mode, mode_line = _DOUBLE, line
        elif c == "`":
            mode, mode_line = _TEMPLATE, line
        elif c in "([{":
            stack.append((c, line))
        elif c in ")]}":
            if not stack:
                category = _BALANCE_CATEGORY[c]
                return _fail(
                    category, f"Extra closing '{c}' with no matching opener",
                    line=line, pattern=c, fix=_BALANCE_FIX[category],
                ), "".join(out)
            opener, open_line = stack.pop()
            if _OPENERS[opener] != c:
                category = _BALANCE_CATEGORY[opener]
                return _fail(
                    category,
                    f"'{opener}' opened on line {open_line} is closed by '{c}'",
                    line=line, pattern=c, fix=_BALANCE_FIX[category],
                ), "".join(out)
            if opener == "${":
                mode = _TEMPLATE
        i += 1

    stripped = "".join(out)
    if mode in (_SINGLE, _DOUBLE):
        return _fail(
            "UnterminatedString", "String literal is never closed",
            line=mode_line, pattern="'" if mode == _SINGLE else '"',
            fix=_BALANCE_FIX["UnterminatedString"],
        ), stripped
    if mode == _TEMPLATE:
        return _fail(
            "UnterminatedTemplate", "Template literal is never closed",
            line=mode_line, pattern="`", fix=_BALANCE_FIX["UnterminatedTemplate"],
        ), stripped
    if mode == _BLOCK_COMMENT:
        return _fail(
            "UnterminatedComment", "Block comment is never closed",
            line=mode_line, pattern="/*", fix=_BALANCE_FIX["UnterminatedComment"],
        ), stripped
    if stack:
        opener, open_line = stack[-1]
        category = _BALANCE_CATEGORY[opener]
        return _fail(
            category,
            f"{len(stack)} unclosed bracket(s); innermost '{opener}' opened on line {open_line}",
            line=open_line, pattern=opener, fix=_BALANCE_FIX[category],
        ), stripped
    return None, stripped


def check_truncation(stripped):
    """Balanced code can still be cut off right after an operator."""
    tail = stripped.rstrip()
    last = tail[-1:]
    if last and last in TRUNCATION_CHARS:
        return _fail(
            "Truncated",
            f"Code appears truncated; it ends with '{last}'",
            line=_line_at(tail, len(tail) - 1),
            pattern=last,
            fix="Finish the last statement and close the file",
        )
    return None


def check_malformed_styles(text):
    match = MALFORMED_URL_RE.search(text)
    if match:
        return _fail(
            "MalformedStyle",
            "CSS url() contains nested parentheses (likely a duplicated URL)",
            line=_line_at(text, match.start()),
            pattern=match.group(0),
            fix="Use a single quoted URL inside url(...)",
        )
    return None


def _tag_end(stripped, i):
    """Index of the `>` closing a tag opened before i, skipping `{...}` attribute values."""
    depth = 0
    for j in range(i, len(stripped)):
        c = stripped[j]
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
        elif c == ">" and depth == 0:
            return j
    return None


def _is_type_name(name):
    if name in TS_TYPE_NAMES or _TYPE_SUFFIX_RE.search(name):
        return True
    return len(name) == 1 and name.isupper()


def check_jsx_balance(stripped):
    """Stack-match JSX open and close tags. Fragments and self-closing tags are skipped."""
    stack = []          # (name, line)
    resume = 0
    for match in _TAG_START_RE.finditer(stripped):
        start = match.start()
        if start < resume:
            continue
        if start > 0 and _WORD.match(stripped[start - 1]):
            continue  # generic argument, e.g. useRef<HTMLDivElement>
        closing, name = match.group(1) == "/", match.group(2)
        if _is_type_name(name):
            continue
        end = _tag_end(stripped, match.end())
        if end is None:
            continue
        resume = end + 1
        line = _line_at(stripped, start)

        if stripped[end - 1] == "/":
            continue
        if not closing:
            if name.lower() not in VOID_ELEMENTS:
                stack.append((name, line))
            continue

        if not stack:
            return _fail(
                "UnexpectedClosingTag", f"Closing tag </{name}> has no matching opener",
                line=line, pattern=f"</{name}>", fix=f"Remove </{name}> or add its opening tag",
            )
        names = [n for n, _ in stack]
        if names[-1] == name:
            stack.pop()
            continue
        if name not in names:
            return _fail(
                "UnexpectedClosingTag",
                f"Closing tag </{name}> has no matching opener (innermost open tag is <{names[-1]}>)",
                line=line, pattern=f"</{name}>", fix=f"Close <{names[-1]}> before </{name}>",
            )
        index = len(names) - 1 - names[::-1].index(name)
        unclosed = stack[index + 1:]
        return _fail(
            "UnclosedJsxTag",
            f"Unclosed JSX tag(s) inside <{name}>: " + ", ".join(f"<{n}>" for n, _ in unclosed),
            line=unclosed[0][1], pattern=f"<{unclosed[0][0]}>",
            fix=f"Close every tag opened inside <{name}> before </{name}>",
        )

    if stack:
        name, line = stack[-1]
        return _fail(
            "UnclosedJsxTag", f"{len(stack)} unclosed JSX tag(s); innermost <{name}>",
            line=line, pattern=f"<{name}>", fix=f"Add </{name}> or make the tag self-closing",
        )
    return None


def check_forbidden(text):
    for pattern, category, severity, message, suggestion in FORBIDDEN_PATTERNS:
        match = pattern.search(text)
        if match:
            return _fail(
                category, message,
                line=_line_at(text, match.start()),
                pattern=match.group(0).strip(),
                fix=suggestion,
                severity=severity,
            )
    return None


def imported_names(text):
    """Local names bound by import statements, mapped to their module."""
    names = {}
    for match in IMPORT_RE.finditer(text):
        clause, module = match.group(1), match.group(2)
        clause = clause.replace("\n", " ")
        named = re.search(r"\{([^}]*)\}", clause)
        if named:
            for part in named.group(1).split(","):
                part = part.strip()
                if not part:
                    continue
                part = re.sub(r"^type\s+", "", part)
                local = part.split(" as ")[-1].strip()
                names[local] = module
            clause = clause[:named.start()] + clause[named.end():]
        for part in clause.split(","):
            part = part.strip()
            if not part:
                continue
            if part.startswith("*"):
                part = part.split(" as ")[-1].strip()
            names[part] = module
    return names


def _import_spans(text):
    return [(m.start(), m.end()) for m in IMPORT_RE.finditer(text)]


def _is_declared(stripped, symbol):
    sym = re.escape(symbol)
    if re.search(rf"\b(?:const|let|var|function|class)\s+{sym}\b", stripped):
        return True
    return re.search(rf"\b(?:const|let|var)\s*\{{[^}}]*\b{sym}\b[^}}]*\}}\s*=", stripped) is not None


def check_missing_imports(text, stripped):
    imported = imported_names(text)
    body = list(stripped)
    for start, end in _import_spans(text):
        for j in range(start, end):
            if body[j] != "\n":
                body[j] = " "
    body = "".join(body)

    for symbol, module in TRACKED_SYMBOLS.items():
        if symbol in imported:
            continue
        match = re.search(rf"(?<![\w.$]){re.escape(symbol)}\b", body)
        if not match:
            continue
        if _is_declared(body, symbol):
            continue
        return _fail(
            "MissingImport",
            f"'{symbol}' is used but never imported",
            line=_line_at(body, match.start()),
            pattern=symbol,
            fix=f"Add `import {{ {symbol} }} from '{module}';` at the top of the file",
        )
    return None


def check_default_export(stripped):
    count = len(EXPORT_DEFAULT_RE.findall(stripped))
    if count == 1:
        return None
    if count == 0:
        return _fail(
            "MissingExport",
            "Component file has no `export default`",
            pattern="export default",
            fix="End the file with `export default <ComponentName>;`",
        )
    second = list(EXPORT_DEFAULT_RE.finditer(stripped))[1]
    return _fail(
        "MultipleExports",
        f"Component file has {count} `export default` statements",
        line=_line_at(stripped, second.start()),
        pattern="export default",
        fix="Keep a single default export; export the others by name",
    )


def validate(text, path_hint=""):
    """Run all checks on one file and return a ValidationResult."""
    if not text or not text.strip():
        return _fail("Empty", "File is empty", fix="Generate the complete file content")

    path = (path_hint or "").lower()
    if path and not path.endswith(CODE_EXTENSIONS):
        return ValidationResult(passed=True)

    failure, stripped = scan(text)
    if failure:
        return failure

    failure = check_truncation(stripped) or check_malformed_styles(text)
    if failure:
        return failure

    component = not path or path.endswith(EXPORT_REQUIRED_EXTENSIONS)
    if component:
        failure = check_jsx_balance(stripped)
        if failure:
            return failure

    failure = check_forbidden(text)
    if failure:
        return failure

    failure = check_missing_imports(text, stripped)
    if failure:
        return failure

    if component:
        failure = check_default_export(stripped)
        if failure:
            return failure

    return ValidationResult(passed=True)
