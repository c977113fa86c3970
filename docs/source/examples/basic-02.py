import trellis


async def do_world():
    await trellis.delay(1)
    print("World!")


async def main():
    async with trellis.open_scope() as scope:
        scope.launch(do_world)
        print("Hello")


trellis.run(main)
