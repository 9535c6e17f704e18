"""
Tests for the asyncio read/write lock.
"""

import asyncio
import unittest

from edge_inference.locks import ReadWriteLock


class TestReadWriteLock(unittest.TestCase):

    def test_readers_share(self):
        async def scenario():
            lock = ReadWriteLock()
            await lock.acquire_read()
            await asyncio.wait_for(lock.acquire_read(), timeout=1)
            self.assertEqual(lock.readers, 2)
            await lock.release_read()
            await lock.release_read()
            self.assertEqual(lock.readers, 0)

        asyncio.run(scenario())

    def test_writer_excludes_readers(self):
        async def scenario():
            lock = ReadWriteLock()
            events = []

            async def reader():
                async with lock.read():
                    events.append("read")

            async with lock.write():
                self.assertTrue(lock.writer_active)
                task = asyncio.create_task(reader())
                await asyncio.sleep(0.01)
                self.assertEqual(events, [])
            await task
            self.assertEqual(events, ["read"])

        asyncio.run(scenario())

    def test_writers_are_serialized(self):
        async def scenario():
            lock = ReadWriteLock()
            active = []
            overlaps = []

            async def writer(name):
                async with lock.write():
                    if active:
                        overlaps.append(name)
                    active.append(name)
                    await asyncio.sleep(0.005)
                    active.remove(name)

            await asyncio.gather(*(writer(i) for i in range(5)))
            self.assertEqual(overlaps, [])

        asyncio.run(scenario())

    def test_waiting_writer_blocks_new_readers(self):
        async def scenario():
            lock = ReadWriteLock()
            order = []
            await lock.acquire_read()

            async def writer():
                async with lock.write():
                    order.append("write")

            async def late_reader():
                async with lock.read():
                    order.append("late-read")

            w = asyncio.create_task(writer())
            await asyncio.sleep(0.01)
            r = asyncio.create_task(late_reader())
            await asyncio.sleep(0.01)
            self.assertEqual(order, [])
            await lock.release_read()
            await asyncio.gather(w, r)
            self.assertEqual(order, ["write", "late-read"])

        asyncio.run(scenario())

    def test_cancelled_writer_unblocks_readers(self):
        async def scenario():
            lock = ReadWriteLock()
            await lock.acquire_read()
            w = asyncio.create_task(lock.acquire_write())
            await asyncio.sleep(0.01)
            w.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await w
            await asyncio.wait_for(lock.acquire_read(), timeout=1)
            self.assertEqual(lock.readers, 2)

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
