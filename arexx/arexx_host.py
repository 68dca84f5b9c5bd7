"""
The host side of the scripting engine: the BBS context a script runs against.

A host exposes its BBS operations to scripts by marking methods with
@bbs_function. The runtime binds each marked method under its script name:
the method name with underscores removed, uppercased (bbs_get_user_name is
called as BBSGETUSERNAME). Marked methods may be plain or async.

Functions backed by the database or the file system catch their own
failures, report them on the debug channel and return a safe default, so a
missing file or a broken database does not end the script.
"""
import inspect
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from arexx.arexx_datatypes import Value, to_int, to_number, to_string, truthy
from arexx.arexx_files import (
    DOOR_SYS, file_read, file_write, file_delete, file_rename,
    list_menus, list_doors, write_drop_file,
)


def _dbg(*parts):
    import os, sys
    if os.environ.get("AREXX_DEBUG"):
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except Exception:
            pass


def bbs_function(func):
    """A decorator to explicitly mark host methods as callable from scripts."""
    func._is_bbs_function = True
    return func


def bbs_function_name(method_name: str) -> str:
    return method_name.replace("_", "").upper()


def host_functions(host: Any) -> Dict[str, Callable]:
    """All @bbs_function methods of `host`, keyed by their script name."""
    bound = {}
    if host is None:
        return bound
    for name, member in inspect.getmembers(host):
        if not callable(member):
            continue
        # The marker may sit on the bound method or the underlying function
        is_api = getattr(member, "_is_bbs_function", False)
        if not is_api:
            func = getattr(member, "__func__", None)
            if func is not None:
                is_api = getattr(func, "_is_bbs_function", False)
        if is_api:
            bound[bbs_function_name(name)] = member
    return bound


@dataclass
class UserInfo:
    username: str = ""
    sec_level: int = 0
    id: Optional[int] = None
    first_name: str = ""
    last_name: str = ""
    location: str = ""
    phone: str = ""
    dataphone: str = ""
    password: str = ""
    num_logons: int = 0
    last_date_on: str = ""
    seconds_remaining: int = 3600
    minutes_remaining: int = 60
    user_comment: str = ""


@dataclass
class SessionInfo:
    current_conf: int = 1
    current_msg_base: int = 1
    current_file_area: int = 1
    current_page: int = 1
    num_uploads: int = 0
    num_downloads: int = 0
    upload_kbytes: int = 0
    download_kbytes: int = 0
    door_usage: int = 0
    num_messages: int = 0


class BBSDatabase(ABC):
    """The persistence operations the host catalogue relies on."""

    @abstractmethod
    async def create_message(self, message: Dict[str, Any]) -> int: raise NotImplementedError
    @abstractmethod
    async def get_messages(self, conf_id: int, base_id: int) -> List[Dict[str, Any]]: raise NotImplementedError
    @abstractmethod
    async def log_event(self, level: str, message: str, details: Dict[str, Any]): raise NotImplementedError
    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]: raise NotImplementedError
    @abstractmethod
    async def get_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]: raise NotImplementedError
    @abstractmethod
    async def update_user(self, user_id: int, fields: Dict[str, Any]): raise NotImplementedError
    @abstractmethod
    async def get_conferences(self) -> List[Dict[str, Any]]: raise NotImplementedError
    @abstractmethod
    async def get_file_areas(self, conf_id: int) -> List[Dict[str, Any]]: raise NotImplementedError
    @abstractmethod
    async def get_file_entries(self, area_id: int, search: Optional[str] = None) -> List[Dict[str, Any]]: raise NotImplementedError

    # Session tracking is optional; None means "not tracked".
    async def get_online_users(self) -> Optional[List[str]]:
        return None

    async def get_last_caller(self) -> Optional[str]:
        return None


class InMemoryBBSDatabase(BBSDatabase):
    """A dict-backed database for tests, the REPL and small installations."""

    def __init__(self, users=None, conferences=None, file_areas=None, file_entries=None):
        self.users: List[Dict[str, Any]] = list(users or [])
        self.conferences: List[Dict[str, Any]] = list(conferences or [])
        self.file_areas: List[Dict[str, Any]] = list(file_areas or [])
        self.file_entries: List[Dict[str, Any]] = list(file_entries or [])
        self.messages: List[Dict[str, Any]] = []
        self.events: List[Dict[str, Any]] = []
        self.online: Optional[List[str]] = None
        self.last_caller: Optional[str] = None

    async def create_message(self, message):
        msg = dict(message, id=len(self.messages) + 1)
        self.messages.append(msg)
        return msg["id"]

    async def get_messages(self, conf_id, base_id):
        return [m for m in self.messages
                if m.get("conference_id") == conf_id and m.get("message_base_id") == base_id]

    async def log_event(self, level, message, details):
        self.events.append({"level": level, "message": message, **details})

    async def get_user_by_username(self, username):
        key = str(username).lower()
        return next((u for u in self.users if str(u.get("username", "")).lower() == key), None)

    async def get_user_by_id(self, user_id):
        return next((u for u in self.users if str(u.get("id")) == str(user_id)), None)

    async def update_user(self, user_id, fields):
        user = await self.get_user_by_id(user_id)
        if user is None:
            raise KeyError(f"no user with id {user_id}")
        user.update(fields)

    async def get_conferences(self):
        return list(self.conferences)

    async def get_file_areas(self, conf_id):
        return [a for a in self.file_areas if a.get("conference_id", conf_id) == conf_id]

    async def get_file_entries(self, area_id, search=None):
        entries = [e for e in self.file_entries if e.get("area_id") == area_id]
        if search:
            needle = search.lower()
            entries = [e for e in entries
                       if needle in e.get("filename", "").lower() or needle in e.get("description", "").lower()]
        return entries

    async def get_online_users(self):
        return self.online

    async def get_last_caller(self):
        return self.last_caller


class BBSHost:
    """The required base class for any host context passed to the interpreter."""

    def __init__(
        self,
        user: Optional[UserInfo] = None,
        session: Optional[SessionInfo] = None,
        *,
        output: Optional[Callable[[str], Any]] = None,
        reader: Optional[Callable[[], Any]] = None,
        database: Optional[BBSDatabase] = None,
        files_dir: str = "data/files",
        menus_dir: str = "data/menus",
        doors_dir: str = "Doors",
        drop_dir: str = "data/doors/dropfiles",
        bbs_name: str = "AmiExpress Web",
    ):
        self.user = user
        self.session = session
        self.output = output
        self.reader = reader
        self.database = database
        self.files_dir = files_dir
        self.menus_dir = menus_dir
        self.doors_dir = doors_dir
        self.drop_dir = drop_dir
        self.bbs_name = bbs_name
        self.last_input = ""
        # Everything sent to the terminal, in order (SAY and BBSWRITE).
        self.written: List[str] = []
        self.events: List[Dict[str, Any]] = []

    async def write(self, text: str):
        """The output sink: records the text and forwards it to `output`."""
        self.written.append(text)
        if self.output is not None:
            res = self.output(text)
            if inspect.isawaitable(res):
                await res

    def _db(self) -> BBSDatabase:
        if self.database is None:
            raise RuntimeError("no database attached to this host")
        return self.database

    def _conf(self) -> int:
        return (self.session.current_conf if self.session else 0) or 1

    def _msg_base(self) -> int:
        return (self.session.current_msg_base if self.session else 0) or 1

    def _file_area(self) -> int:
        return (self.session.current_file_area if self.session else 0) or 1

    async def _log(self, level: str, message: str):
        details = {
            "user_id": self.user.id if self.user else None,
            "conference_id": self.session.current_conf if self.session else None,
        }
        self.events.append({"level": level, "message": message, "time": time.time(), **details})
        if self.database is not None:
            await self.database.log_event(level, message, details)

    # --- Terminal I/O ---

    @bbs_function
    async def bbs_write(self, text: Value = ""):
        await self.write(to_string(text))

    @bbs_function
    async def bbs_read(self) -> str:
        if self.reader is not None:
            res = self.reader()
            if inspect.isawaitable(res):
                res = await res
            self.last_input = to_string(res).rstrip("\r\n")
        return self.last_input

    # --- User and session ---

    @bbs_function
    def bbs_get_user_name(self) -> str:
        return (self.user.username if self.user else "") or "Unknown"

    @bbs_function
    def bbs_get_user_level(self) -> int:
        return (self.user.sec_level if self.user else 0) or 0

    @bbs_function
    def bbs_get_conf(self) -> int:
        return (self.session.current_conf if self.session else 0) or 0

    @bbs_function
    async def bbs_join_conf(self, conf_id: Value) -> bool:
        if self.session is None:
            return False
        self.session.current_conf = to_int(conf_id)
        return True

    @bbs_function
    def bbs_check_level(self, required: Value) -> bool:
        return self.bbs_get_user_level() >= to_number(required)

    @bbs_function
    async def bbs_get_online_count(self) -> int:
        try:
            online = await self._db().get_online_users()
            return 1 if online is None else len(online)
        except Exception as e:
            _dbg("BBSGETONLINECOUNT failed:", e)
            return 1

    @bbs_function
    async def bbs_get_online_users(self) -> str:
        try:
            online = await self._db().get_online_users()
        except Exception as e:
            _dbg("BBSGETONLINEUSERS failed:", e)
            online = None
        if online is None:
            online = [self.user.username] if self.user and self.user.username else []
        return ", ".join(online)

    @bbs_function
    async def bbs_get_last_caller(self) -> str:
        try:
            return (await self._db().get_last_caller()) or "System"
        except Exception as e:
            _dbg("BBSGETLASTCALLER failed:", e)
            return "Unknown"

    @bbs_function
    async def bbs_get_user(self, username_or_id: Value) -> str:
        try:
            db = self._db()
            if isinstance(username_or_id, (int, float)) and not isinstance(username_or_id, bool):
                found = await db.get_user_by_id(to_int(username_or_id))
            else:
                found = await db.get_user_by_username(to_string(username_or_id))
            return found.get("username", "") if found else ""
        except Exception as e:
            _dbg("BBSGETUSER failed:", e)
            return ""

    @bbs_function
    async def bbs_set_user(self, field_name: Value, value: Value) -> bool:
        try:
            if self.user is None or self.user.id is None:
                return False
            await self._db().update_user(self.user.id, {to_string(field_name): value})
            return True
        except Exception as e:
            _dbg("BBSSETUSER failed:", e)
            return False

    # --- Messages and logging ---

    @bbs_function
    async def bbs_post_msg(self, subject: Value, body: Value, is_private: Value = False, to_user: Value = None) -> int:
        try:
            return await self._db().create_message({
                "subject": to_string(subject),
                "body": to_string(body),
                "author": (self.user.username if self.user else "") or "System",
                "timestamp": time.time(),
                "conference_id": self._conf(),
                "message_base_id": self._msg_base(),
                "is_private": truthy(is_private),
                "to_user": to_string(to_user) if to_user is not None else None,
            })
        except Exception as e:
            _dbg("BBSPOSTMSG failed:", e)
            return 0

    @bbs_function
    async def bbs_send_private(self, to_user: Value, subject: Value, body: Value) -> int:
        return await self.bbs_post_msg(subject, body, True, to_user)

    @bbs_function
    async def bbs_get_msg_count(self, conf_id: Value = None, base_id: Value = None) -> int:
        try:
            conf = to_int(conf_id) if conf_id not in (None, "") else 0
            base = to_int(base_id) if base_id not in (None, "") else 0
            messages = await self._db().get_messages(conf or self._conf(), base or self._msg_base())
            return len(messages)
        except Exception as e:
            _dbg("BBSGETMSGCOUNT failed:", e)
            return 0

    @bbs_function
    async def bbs_log(self, level: Value, message: Value = ""):
        # A failing event log is not swallowed: the script sees a host error.
        lvl = to_string(level).lower()
        await self._log(lvl if lvl in ("info", "warning", "error") else "info", to_string(message))

    # --- Conferences and file areas ---

    @bbs_function
    async def bbs_get_conf_name(self, conf_id: Value = None) -> str:
        try:
            wanted = (to_int(conf_id) if conf_id not in (None, "") else 0) or self._conf()
            for conf in await self._db().get_conferences():
                if conf.get("id") == wanted:
                    return conf.get("name") or "Unknown"
            return "Unknown"
        except Exception as e:
            _dbg("BBSGETCONFNAME failed:", e)
            return "Unknown"

    @bbs_function
    async def bbs_get_conferences(self) -> int:
        try:
            return len(await self._db().get_conferences())
        except Exception as e:
            _dbg("BBSGETCONFERENCES failed:", e)
            return 0

    @bbs_function
    async def bbs_get_file_count(self, area_id: Value = None) -> int:
        try:
            area = (to_int(area_id) if area_id not in (None, "") else 0) or self._file_area()
            return len(await self._db().get_file_entries(area))
        except Exception as e:
            _dbg("BBSGETFILECOUNT failed:", e)
            return 0

    @bbs_function
    async def bbs_get_file_areas(self) -> int:
        try:
            return len(await self._db().get_file_areas(self._conf()))
        except Exception as e:
            _dbg("BBSGETFILEAREAS failed:", e)
            return 0

    @bbs_function
    async def bbs_get_area_name(self, area_id: Value = None) -> str:
        try:
            wanted = (to_int(area_id) if area_id not in (None, "") else 0) or self._file_area()
            for area in await self._db().get_file_areas(self._conf()):
                if area.get("id") == wanted:
                    return area.get("name") or "Unknown"
            return "Unknown"
        except Exception as e:
            _dbg("BBSGETAREANAME failed:", e)
            return "Unknown"

    @bbs_function
    async def bbs_search_files(self, pattern: Value, area_id: Value = None) -> str:
        try:
            area = (to_int(area_id) if area_id not in (None, "") else 0) or self._file_area()
            entries = await self._db().get_file_entries(area, search=to_string(pattern))
            return ", ".join(e.get("filename", "") for e in entries)
        except Exception as e:
            _dbg("BBSSEARCHFILES failed:", e)
            return ""

    @bbs_function
    def bbs_get_disk_space(self) -> int:
        """Free bytes on the volume holding the file areas."""
        try:
            return shutil.disk_usage(self.files_dir).free
        except Exception as e:
            _dbg("BBSGETDISKSPACE failed:", e)
            return 0

    # --- Sandboxed files ---

    @bbs_function
    async def bbs_read_file(self, filename: Value) -> str:
        try:
            return await file_read(self.files_dir, to_string(filename))
        except Exception as e:
            _dbg("BBSREADFILE failed:", e)
            return ""

    @bbs_function
    async def bbs_write_file(self, filename: Value, content: Value, append: Value = False) -> bool:
        try:
            await file_write(self.files_dir, to_string(filename), to_string(content), truthy(append))
            return True
        except Exception as e:
            _dbg("BBSWRITEFILE failed:", e)
            return False

    @bbs_function
    async def bbs_delete_file(self, filename: Value) -> bool:
        try:
            await file_delete(self.files_dir, to_string(filename))
            await self._log("info", f"File deleted: {to_string(filename)}")
            return True
        except Exception as e:
            _dbg("BBSDELETEFILE failed:", e)
            return False

    @bbs_function
    async def bbs_rename_file(self, old: Value, new: Value) -> bool:
        try:
            await file_rename(self.files_dir, to_string(old), to_string(new))
            await self._log("info", f"File renamed: {to_string(old)} -> {to_string(new)}")
            return True
        except Exception as e:
            _dbg("BBSRENAMEFILE failed:", e)
            return False

    # --- Menus and doors ---

    @bbs_function
    async def bbs_show_menu(self, menu_name: Value):
        name = to_string(menu_name)
        try:
            content = await file_read(self.menus_dir, f"{name}.ans")
        except Exception as e:
            _dbg("BBSSHOWMENU failed:", e)
            content = ""
        if content:
            await self.write(content)
        else:
            await self.write(f"Menu '{name}' not found")

    @bbs_function
    def bbs_get_menu_list(self) -> str:
        try:
            return ", ".join(list_menus(self.menus_dir))
        except Exception as e:
            _dbg("BBSGETMENULIST failed:", e)
            return ""

    @bbs_function
    def bbs_get_door_list(self) -> str:
        try:
            return ", ".join(list_doors(self.doors_dir))
        except Exception as e:
            _dbg("BBSGETDOORLIST failed:", e)
            return ""

    @bbs_function
    async def bbs_launch_door(self, door_name: Value, *params: Value) -> int:
        """Announces a door launch; the door process itself runs outside the engine. 0 on success."""
        name = to_string(door_name)
        args = [to_string(p) for p in params]
        try:
            await self._log("info", f"Launching door: {name} with params: {' '.join(args)}")
            await self.write(f"Door '{name}' would launch here with params: {', '.join(args)}")
            return 0
        except Exception as e:
            _dbg("BBSLAUNCHDOOR failed:", e)
            return 1

    @bbs_function
    async def bbs_create_drop_file(self, door_name: Value, fmt: Value = DOOR_SYS) -> bool:
        try:
            await write_drop_file(self.drop_dir, to_string(fmt), self.user, self.session, self.bbs_name)
            await self._log("info", f"Drop file created: {to_string(fmt).upper()} for door {to_string(door_name)}")
            return True
        except Exception as e:
            _dbg("BBSCREATEDROPFILE failed:", e)
            return False
