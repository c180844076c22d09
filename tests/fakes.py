"""Stand-ins for the browser, mailbox watcher and SMTP notifier."""
import asyncio


class FakeAutomator:
    def __init__(self, result=True, gate=None, error=None):
        self.result = result
        self.gate = gate
        self.error = error
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.initialized = False
        self.cleaned_up = False

    async def initialize(self):
        self.initialized = True

    async def apply_to_job_by_details(self, job):
        self.calls.append(job.key)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return self.result
        finally:
            self.active -= 1

    def is_ready(self):
        return self.initialized and not self.cleaned_up

    async def cleanup(self):
        self.cleaned_up = True


class FakeWatcher:
    def __init__(self):
        self.handler = None
        self.stopped = False

    async def run(self, handler):
        self.handler = handler
        await asyncio.Event().wait()

    async def stop(self):
        self.stopped = True

    def is_connected(self):
        return self.handler is not None and not self.stopped


class FakeNotifier:
    configured = True

    def __init__(self):
        self.successes = []
        self.errors = []

    def send_success(self, job_keys, elapsed_ms):
        self.successes.append(list(job_keys))
        return True

    def send_error(self, error, job_keys):
        self.errors.append((str(error), list(job_keys)))
        return True

    def send_test(self):
        return None
