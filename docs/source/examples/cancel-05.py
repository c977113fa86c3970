import trellis


async def job():
    try:
        for i in range(1000):
            print("job: I'm sleeping {} ...".format(i))
            await trellis.delay(0.5)
    finally:
        print("job: I'm running finally")


async def main():
    async with trellis.open_scope() as scope:
        task = scope.launch(job)
        await trellis.delay(1.3)
        print("main: I'm tired of waiting!")
        await task.cancel_and_join()
        print("main: Now I can quit.")


trellis.run(main)
