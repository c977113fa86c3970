import trellis


async def say_after(seconds, what):
    await trellis.delay(seconds)
    print(what)


async def do_world():
    # returns once both children are done
    async with trellis.open_scope() as scope:
        scope.launch(say_after, 2, "World 2")
        scope.launch(say_after, 1, "World 1")
        print("Hello")


async def main():
    await do_world()
    print("Done")


trellis.run(main)
