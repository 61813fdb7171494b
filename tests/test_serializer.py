from __future__ import annotations

import asyncio

import pytest

from ivas_otp_relay.portal.serializer import PageSerializer


def test_exclusive_sections_run_in_arrival_order_without_overlap() -> None:
    async def scenario() -> list[str]:
        serializer = PageSerializer()
        events: list[str] = []

        async def op(name: str) -> None:
            async with serializer.exclusive(name):
                events.append(f"{name}:start")
                assert serializer.holder == name
                await asyncio.sleep(0.01)
                events.append(f"{name}:end")

        tasks = []
        for name in ("A", "B", "C"):
            tasks.append(asyncio.create_task(op(name)))
            await asyncio.sleep(0)  # fix arrival order
        await asyncio.gather(*tasks)
        assert not serializer.busy
        return events

    assert asyncio.run(scenario()) == ["A:start", "A:end", "B:start", "B:end", "C:start", "C:end"]


def test_exception_releases_permit() -> None:
    async def scenario() -> list[str]:
        serializer = PageSerializer()
        events: list[str] = []

        async def failing() -> None:
            events.append("A")
            raise RuntimeError("boom")

        async def ok() -> str:
            events.append("B")
            return "b"

        first = asyncio.create_task(serializer.run_exclusive(failing, label="A"))
        await asyncio.sleep(0)
        second = asyncio.create_task(serializer.run_exclusive(ok, label="B"))

        with pytest.raises(RuntimeError):
            await first
        assert await second == "b"
        assert not serializer.busy
        return events

    assert asyncio.run(scenario()) == ["A", "B"]
