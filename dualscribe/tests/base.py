import asyncio
import functools

import fixtures
import testtools

TEST_TIMEOUT = 10


def aio_run(async_fn):
    @functools.wraps(async_fn)
    def async_runner(self):
        return asyncio.run(asyncio.wait_for(async_fn(self), TEST_TIMEOUT))

    return async_runner


asynctest = aio_run


async def wait_for_condition(predicate, timeout=2.0, interval=.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('Condition not met within %ss' % timeout)
        await asyncio.sleep(interval)


class TestCase(testtools.TestCase):
    def make_save_dir(self):
        return self.useFixture(fixtures.TempDir()).path
