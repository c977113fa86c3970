import trellis


async def dot():
    await trellis.delay(5)
    print(".", end="", flush=True)


async def main():
    async with trellis.open_scope() as scope:
        for _ in range(50_000):
            scope.launch(dot)
    print()


trellis.run(main)
