import asyncio


async def settle(turns: int = 10) -> None:
    """Let queued flushes, deliveries and finalizer messages run."""
    for _ in range(turns):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* until true; for ports whose delivery runs on threads."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
