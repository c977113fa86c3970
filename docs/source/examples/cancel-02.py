# A task that never reaches a checkpoint can't be cancelled: this prints all
# five lines even though we cancel it after the third.
import time

import trellis


async def job(start_time):
    next_print_time = start_time
    i = 0
    while i < 5:
        if time.monotonic() >= next_print_time:
            print("job: I'm sleeping {} ...".format(i))
            i += 1
            next_print_time += 0.5


async def main():
    async with trellis.open_scope() as scope:
        task = scope.launch(job, time.monotonic())
        await trellis.delay(1.3)
        print("main: I'm tired of waiting!")
        await task.cancel_and_join()
        print("main: Now I can quit.")


# job hogs one worker thread, so main needs a second one
trellis.run(main, workers=2)
