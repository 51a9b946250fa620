"""Unit-of-work behaviour of session_scope"""
import pytest

from lessonpulse.database import after_commit, session_scope
from lessonpulse.db_models import Student

pytestmark = pytest.mark.anyio


def student_row():
    return Student(full_name="Ona Petraitė", school="Vilnius Gymnasium", grade="9", password_hash="x")


async def test_callbacks_run_after_commit(database):
    ran = []

    async def announce():
        async with session_scope() as check:
            ran.append(await check.get(Student, row.id) is not None)

    async with session_scope() as db:
        row = student_row()
        db.add(row)
        await db.flush()
        after_commit(db, announce)
        assert ran == []

    assert ran == [True]


async def test_callbacks_are_dropped_on_rollback(database):
    ran = []

    async def announce():
        ran.append(True)

    with pytest.raises(RuntimeError):
        async with session_scope() as db:
            db.add(student_row())
            after_commit(db, announce)
            raise RuntimeError("boom")

    assert ran == []


async def test_failing_callback_does_not_undo_the_commit(database):
    async def broken():
        raise ConnectionError("socket gone")

    async with session_scope() as db:
        row = student_row()
        db.add(row)
        after_commit(db, broken)

    async with session_scope() as db:
        assert await db.get(Student, row.id) is not None
