import asyncio


class InterruptError(Exception):
    pass


async def interruptable_get(queue, event):
    """Get an item from ``queue`` unless ``event`` is set first.

    :raises InterruptError: If ``event`` was set before an item arrived.
    """
    if event.is_set():
        raise InterruptError
    trigger = asyncio.Event()

    def set_trigger(future):
        trigger.set()

    get_fut = asyncio.ensure_future(queue.get())
    get_fut.add_done_callback(set_trigger)

    interrupt_fut = asyncio.ensure_future(event.wait())
    interrupt_fut.add_done_callback(set_trigger)

    try:
        await trigger.wait()
    except asyncio.CancelledError:
        get_fut.cancel()
        interrupt_fut.cancel()
        raise

    if get_fut.done() and not get_fut.cancelled():
        interrupt_fut.cancel()
        return get_fut.result()
    get_fut.cancel()
    raise InterruptError
