import trellis


async def main():
    async with trellis.open_scope() as scope:

        async def world():
            await trellis.delay(1)
            print("World!")

        scope.launch(world)
        print("Hello")


trellis.run(main)
