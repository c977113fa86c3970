import trellis


async def world():
    await trellis.delay(1)
    print("World!")


async def main():
    async with trellis.open_scope() as scope:
        task = scope.launch(world)
        print("Hello")
        await task.join()
        print("Done")


trellis.run(main)
