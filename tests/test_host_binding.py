import pytest

from arexx.arexx_runtime import Interpreter, EngineConfig
from arexx.arexx_host import (
    BBSHost, UserInfo, SessionInfo, InMemoryBBSDatabase, bbs_function, host_functions,
)


def assert_ok(res, output=None):
    assert res.success, f"expected success, got error: {res.error}"
    if output is not None:
        assert res.output == output, f"expected {output!r}, got {res.output!r}"


async def run_arexx(src: str, host, args=None):
    return await Interpreter(host, args, EngineConfig()).execute(src)


def make_host(tmp_path=None, database=None, **kwargs):
    if database is None:
        database = InMemoryBBSDatabase(
            users=[{"id": 7, "username": "alice"}, {"id": 8, "username": "bob"}],
            conferences=[{"id": 1, "name": "Main"}, {"id": 2, "name": "Amiga"}],
            file_areas=[{"id": 1, "name": "Uploads", "conference_id": 2}],
            file_entries=[
                {"area_id": 1, "filename": "demo.lha", "description": "a demo"},
                {"area_id": 1, "filename": "game.lzx", "description": "a game"},
            ],
        )
    if tmp_path is not None:
        kwargs.setdefault("files_dir", str(tmp_path / "files"))
        kwargs.setdefault("menus_dir", str(tmp_path / "menus"))
        kwargs.setdefault("doors_dir", str(tmp_path / "doors"))
        kwargs.setdefault("drop_dir", str(tmp_path / "drop"))
    return BBSHost(
        UserInfo(username="alice", sec_level=50, id=7, location="Oslo"),
        SessionInfo(current_conf=2),
        database=database,
        **kwargs,
    )


class GameHost(BBSHost):
    def __init__(self):
        super().__init__(UserInfo(username="zed", sec_level=10, id=1), SessionInfo())
        self.points = 0

    @bbs_function
    async def bbs_add_points(self, amount):
        self.points += int(amount)
        return self.points

    @bbs_function
    def boom(self):
        raise RuntimeError("kaboom")

    # Same script name as the UPPER built-in
    @bbs_function
    def upper(self, s):
        return "host"

    def not_exposed(self):
        return "hidden"


def test_marked_methods_are_bound_without_underscores():
    names = host_functions(GameHost())
    assert "BBSADDPOINTS" in names
    assert "BBSGETUSERNAME" in names
    assert "BBSCREATEDROPFILE" in names
    assert "BBSLAUNCHDOOR" in names and "BBSGETDISKSPACE" in names
    assert "NOTEXPOSED" not in names
    assert "WRITE" not in names


@pytest.mark.asyncio
async def test_async_host_function_is_awaited():
    host = GameHost()
    res = await run_arexx("CALL BBSADDPOINTS 5\nSAY BBSADDPOINTS(10)", host)
    assert_ok(res, ["15"])
    assert host.points == 15


@pytest.mark.asyncio
async def test_host_functions_shadow_builtins_and_procedures_shadow_host():
    host = GameHost()
    res = await run_arexx('SAY UPPER("x")', host)
    assert_ok(res, ["host"])
    src = 'PROCEDURE BBSGETUSERNAME()\nRETURN "shadow"\nEND\nSAY BBSGETUSERNAME()'
    res = await run_arexx(src, host)
    assert_ok(res, ["shadow"])


@pytest.mark.asyncio
async def test_uncaught_host_exception_becomes_host_error():
    res = await run_arexx('SAY "before"\nCALL BOOM()', GameHost())
    assert not res.success
    assert res.error == "HostError: BOOM: kaboom"
    assert res.error_kind == "host"
    assert res.output == ["before"]


@pytest.mark.asyncio
async def test_say_is_forwarded_to_the_host_sink():
    seen = []
    host = make_host(output=seen.append)
    res = await run_arexx('SAY "hi"\nCALL BBSWRITE("a, b")', host)
    assert_ok(res, ["hi"])
    assert host.written == ["hi", "a, b"]
    assert seen == ["hi", "a, b"]


@pytest.mark.asyncio
async def test_initial_variables_come_from_host_and_config():
    res = await run_arexx("SAY USERNAME\nSAY USERLEVEL\nSAY CONFERENCE\nSAY BBSNAME\nSAY VERSION", make_host())
    assert_ok(res, ["alice", "50", "2", "AmiExpress Web", "1.0"])


@pytest.mark.asyncio
async def test_user_and_session_functions():
    host = make_host()
    src = """
    SAY BBSGETUSERNAME()
    SAY BBSGETUSERLEVEL()
    SAY BBSCHECKLEVEL(10)
    SAY BBSCHECKLEVEL(100)
    CALL BBSJOINCONF(1)
    SAY BBSGETCONF()
    SAY BBSGETCONFNAME()
    SAY BBSGETCONFNAME(2)
    SAY BBSGETCONFERENCES()
    SAY BBSGETUSER("BOB")
    SAY BBSGETUSER(7)
    SAY BBSGETUSER("nobody")
    """
    res = await run_arexx(src, host)
    assert_ok(res, ["alice", "50", "1", "0", "1", "Main", "Amiga", "2", "bob", "alice", ""])
    assert host.session.current_conf == 1


@pytest.mark.asyncio
async def test_message_functions():
    db = InMemoryBBSDatabase()
    host = make_host(database=db)
    src = """
    ID = BBSPOSTMSG("Hi", "Body text")
    SAY ID
    CALL BBSSENDPRIVATE "bob", "Psst", "secret"
    SAY BBSGETMSGCOUNT()
    SAY BBSGETMSGCOUNT(9)
    """
    res = await run_arexx(src, host)
    assert_ok(res, ["1", "2", "0"])
    assert db.messages[0]["author"] == "alice"
    assert db.messages[0]["conference_id"] == 2
    assert db.messages[1]["is_private"] is True
    assert db.messages[1]["to_user"] == "bob"


@pytest.mark.asyncio
async def test_file_area_functions():
    res = await run_arexx(
        'SAY BBSGETFILECOUNT()\nSAY BBSGETFILEAREAS()\nSAY BBSGETAREANAME()\nSAY BBSSEARCHFILES("demo")',
        make_host(),
    )
    assert_ok(res, ["2", "1", "Uploads", "demo.lha"])


@pytest.mark.asyncio
async def test_bbslog_records_events_and_propagates_database_failures():
    db = InMemoryBBSDatabase()
    host = make_host(database=db)
    res = await run_arexx('CALL BBSLOG "warning", "disk low"', host)
    assert_ok(res)
    assert db.events[0]["level"] == "warning"
    assert db.events[0]["user_id"] == 7

    class BrokenDB(InMemoryBBSDatabase):
        async def log_event(self, level, message, details):
            raise RuntimeError("db down")

    res = await run_arexx('CALL BBSLOG "info", "x"', make_host(database=BrokenDB()))
    assert not res.success
    assert res.error == "HostError: BBSLOG: db down"


@pytest.mark.asyncio
async def test_database_backed_functions_return_safe_defaults():
    class BrokenDB(InMemoryBBSDatabase):
        async def get_messages(self, conf_id, base_id):
            raise RuntimeError("db down")

        async def get_conferences(self):
            raise RuntimeError("db down")

    host = make_host(database=BrokenDB())
    res = await run_arexx('SAY BBSGETMSGCOUNT()\nSAY BBSGETCONFNAME()\nSAY BBSPOSTMSG("s", "b")', host)
    assert_ok(res, ["0", "Unknown", "1"])

    bare = BBSHost()
    res = await run_arexx("SAY BBSGETUSERNAME()\nSAY BBSGETONLINECOUNT()\nSAY BBSGETLASTCALLER()", bare)
    assert_ok(res, ["Unknown", "1", "Unknown"])


@pytest.mark.asyncio
async def test_online_users_fall_back_to_current_user():
    db = InMemoryBBSDatabase()
    res = await run_arexx("SAY BBSGETONLINEUSERS()\nSAY BBSGETLASTCALLER()", make_host(database=db))
    assert_ok(res, ["alice", "System"])
    db.online = ["alice", "bob"]
    db.last_caller = "bob"
    res = await run_arexx("SAY BBSGETONLINEUSERS()\nSAY BBSGETONLINECOUNT()\nSAY BBSGETLASTCALLER()", make_host(database=db))
    assert_ok(res, ["alice, bob", "2", "bob"])


@pytest.mark.asyncio
async def test_bbsread_returns_reader_input():
    async def reader():
        return "yes\n"
    host = make_host(reader=reader)
    res = await run_arexx("ANSWER = BBSREAD()\nSAY ANSWER", host)
    assert_ok(res, ["yes"])
    assert host.last_input == "yes"


@pytest.mark.asyncio
async def test_bbsset_user_updates_database():
    db = InMemoryBBSDatabase(users=[{"id": 7, "username": "alice"}])
    res = await run_arexx('SAY BBSSETUSER("location", "Bergen")', make_host(database=db))
    assert_ok(res, ["1"])
    assert db.users[0]["location"] == "Bergen"


@pytest.mark.asyncio
async def test_launch_door_logs_and_announces_the_launch():
    db = InMemoryBBSDatabase()
    host = make_host(database=db)
    res = await run_arexx('SAY BBSLAUNCHDOOR("lord", "fast", "ansi")', host)
    assert_ok(res, ["0"])
    assert host.written == ["Door 'lord' would launch here with params: fast, ansi", "0"]
    assert db.events[0]["message"] == "Launching door: lord with params: fast ansi"

    class BrokenDB(InMemoryBBSDatabase):
        async def log_event(self, level, message, details):
            raise RuntimeError("db down")

    host = make_host(database=BrokenDB())
    res = await run_arexx('SAY BBSLAUNCHDOOR("lord")', host)
    assert_ok(res, ["1"])
    assert host.written == ["1"]


@pytest.mark.asyncio
async def test_disk_space_reports_free_bytes_of_the_file_area(tmp_path, monkeypatch):
    from types import SimpleNamespace
    seen = []

    def fake_disk_usage(path):
        seen.append(path)
        return SimpleNamespace(total=100, used=60, free=40)

    monkeypatch.setattr("arexx.arexx_host.shutil.disk_usage", fake_disk_usage)
    host = make_host(files_dir=str(tmp_path))
    res = await run_arexx("SAY BBSGETDISKSPACE()", host)
    assert_ok(res, ["40"])
    assert seen == [str(tmp_path)]


@pytest.mark.asyncio
async def test_disk_space_of_a_missing_directory_is_zero(tmp_path):
    host = make_host(files_dir=str(tmp_path / "nowhere"))
    res = await run_arexx("SAY BBSGETDISKSPACE()", host)
    assert_ok(res, ["0"])
