from __future__ import annotations
import os
from typing import Any, List

# Every path a script names is resolved inside one base directory; anything
# that escapes it (.., absolute paths, symlinks) is refused.

DOOR_SYS = "DOOR.SYS"
DORINFO = "DORINFO1.DEF"
DROP_FILE_FORMATS = (DOOR_SYS, DORINFO)


def resolve_in(base_dir: str, name: str) -> str:
    base = os.path.realpath(base_dir)
    path = os.path.realpath(os.path.join(base, str(name)))
    if path != base and not path.startswith(base + os.sep):
        raise PermissionError(f"Access denied: Invalid file path: {name}")
    return path


async def file_read(base_dir: str, name: str) -> str:
    path = resolve_in(base_dir, name)
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


async def file_write(base_dir: str, name: str, content: str, append: bool = False):
    path = resolve_in(base_dir, name)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a" if append else "w", encoding="utf-8") as f:
        f.write(content)


async def file_delete(base_dir: str, name: str):
    path = resolve_in(base_dir, name)
    if os.path.isdir(path):
        # Scripts only ever remove plain files
        raise IsADirectoryError(path)
    os.remove(path)


async def file_rename(base_dir: str, old: str, new: str):
    src = resolve_in(base_dir, old)
    dst = resolve_in(base_dir, new)
    os.rename(src, dst)


def list_menus(menus_dir: str) -> List[str]:
    """Menu names (.ans files without the suffix); a missing directory has none."""
    try:
        names = os.listdir(menus_dir)
    except FileNotFoundError:
        return []
    return sorted(
        n[:-4] for n in names
        if n.lower().endswith(".ans") and os.path.isfile(os.path.join(menus_dir, n))
    )


def list_doors(doors_dir: str) -> List[str]:
    """Door names (subdirectories); a missing directory has none."""
    try:
        names = os.listdir(doors_dir)
    except FileNotFoundError:
        return []
    return sorted(n for n in names if os.path.isdir(os.path.join(doors_dir, n)))


def _field(obj: Any, name: str, default: Any) -> Any:
    value = getattr(obj, name, None) if obj is not None else None
    return default if value in (None, "") else value


def door_sys_lines(user: Any, session: Any) -> List[str]:
    """The 30-line PCBoard-style DOOR.SYS layout."""
    return [
        "COM1:",
        "115200",
        "8",
        "1",
        "115200",
        "Y",
        "Y",
        "Y",
        "Y",
        str(_field(user, "username", "Guest")),
        str(_field(user, "location", "Unknown")),
        str(_field(user, "phone", "000-000-0000")),
        str(_field(user, "dataphone", "000-000-0000")),
        str(_field(user, "password", "")),
        str(_field(user, "sec_level", 0)),
        str(_field(user, "num_logons", 0)),
        str(_field(user, "last_date_on", "")),
        str(_field(user, "seconds_remaining", 3600)),
        str(_field(user, "minutes_remaining", 60)),
        "GR",
        str(_field(session, "current_page", 1)),
        "N",
        "1,2,3,4,5,6,7",
        str(_field(session, "num_uploads", 0)),
        str(_field(session, "num_downloads", 0)),
        str(_field(session, "upload_kbytes", 0)),
        str(_field(session, "download_kbytes", 0)),
        str(_field(user, "user_comment", "")),
        str(_field(session, "door_usage", 0)),
        str(_field(session, "num_messages", 0)),
    ]


def dorinfo_lines(user: Any, bbs_name: str) -> List[str]:
    """The RBBS/QuickBBS-style DORINFO1.DEF layout."""
    return [
        bbs_name,
        "Sysop",
        "Sysop",
        "User",
        "COM1",
        "115200 BAUD,N,8,1",
        "0",
        str(_field(user, "username", "Guest")),
        str(_field(user, "first_name", "Guest")),
        str(_field(user, "last_name", "User")),
        str(_field(user, "location", "Unknown")),
        str(_field(user, "sec_level", 0)),
        str(_field(user, "minutes_remaining", 60)),
        "-1",
    ]


async def write_drop_file(drop_dir: str, fmt: str, user: Any, session: Any, bbs_name: str) -> str:
    """Writes a door drop file (CRLF line endings) and returns its path."""
    fmt = (fmt or DOOR_SYS).upper()
    if fmt not in DROP_FILE_FORMATS:
        raise ValueError(f"Unknown drop file format: {fmt}")
    lines = door_sys_lines(user, session) if fmt == DOOR_SYS else dorinfo_lines(user, bbs_name)
    os.makedirs(drop_dir, exist_ok=True)
    path = os.path.join(drop_dir, fmt)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write("\r\n".join(lines))
    return path
