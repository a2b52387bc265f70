"""
Unit Tests for the in-process single-flight gate
"""
import asyncio
import pytest

from app.services.single_flight import SingleFlight


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_followers_share_leader_result(self):
        flights = SingleFlight()
        calls = []
        release = asyncio.Event()

        async def work():
            calls.append(1)
            await release.wait()
            return {"balance": 450}

        tasks = [asyncio.create_task(flights.run("key", work)) for _ in range(3)]
        await asyncio.sleep(0)
        assert flights.in_flight("key") is True

        release.set()
        results = await asyncio.gather(*tasks)

        assert len(calls) == 1
        assert results == [{"balance": 450}] * 3
        assert flights.in_flight("key") is False

    @pytest.mark.asyncio
    async def test_followers_see_leader_exception(self):
        flights = SingleFlight()
        release = asyncio.Event()

        async def work():
            await release.wait()
            raise RuntimeError("gateway down")

        leader = asyncio.create_task(flights.run("key", work))
        await asyncio.sleep(0)
        follower = asyncio.create_task(flights.run("key", work))
        await asyncio.sleep(0)
        release.set()

        with pytest.raises(RuntimeError):
            await leader
        with pytest.raises(RuntimeError):
            await follower
        assert flights.in_flight("key") is False

    @pytest.mark.asyncio
    async def test_different_keys_run_independently(self):
        flights = SingleFlight()
        calls = []

        async def work(name):
            calls.append(name)
            await asyncio.sleep(0)
            return name

        results = await asyncio.gather(
            flights.run(("u1", "KA01AB1234", "rc"), lambda: work("rc")),
            flights.run(("u1", "KA01AB1234", "fastag"), lambda: work("fastag")),
        )

        assert results == ["rc", "fastag"]
        assert sorted(calls) == ["fastag", "rc"]

    @pytest.mark.asyncio
    async def test_sequential_calls_run_again(self):
        flights = SingleFlight()
        calls = []

        async def work():
            calls.append(1)
            return len(calls)

        assert await flights.run("key", work) == 1
        assert await flights.run("key", work) == 2
