from chatweb.services.context_builder import ContextBuilder, MessageNode, build_content, drop_images


class FakeSource:
    def __init__(self, *nodes):
        self.nodes = {node.id: node for node in nodes}
        self.lookups = []
        self.scopes = []

    async def get_message_by_id(self, message_id, **scope):
        self.lookups.append(message_id)
        self.scopes.append(scope)
        return self.nodes.get(message_id)


async def no_images(key):
    return None


def chain():
    return FakeSource(
        MessageNode(id="A", role="user", text="a"),
        MessageNode(id="B", role="assistant", text="b", parent_message_id="A"),
        MessageNode(id="C", role="user", text="c", parent_message_id="B"),
    )


async def test_caps_at_max_count_oldest_first():
    builder = ContextBuilder(chain(), no_images)
    messages = await builder.build("C", 2)
    assert messages == [
        {"role": "assistant", "content": "b"},
        {"role": "user", "content": "c"},
    ]


async def test_walks_to_root():
    builder = ContextBuilder(chain(), no_images)
    messages = await builder.build("C", 10)
    assert [m["content"] for m in messages] == ["a", "b", "c"]


async def test_zero_count_or_no_parent_is_empty():
    source = chain()
    builder = ContextBuilder(source, no_images)
    assert await builder.build("C", 0) == []
    assert await builder.build(None, 10) == []
    assert source.lookups == []


async def test_missing_node_stops_walk():
    source = FakeSource(
        MessageNode(id="C", role="user", text="c", parent_message_id="gone"),
    )
    messages = await ContextBuilder(source, no_images).build("C", 10)
    assert messages == [{"role": "user", "content": "c"}]


async def test_deleted_nodes_are_skipped_but_walked_through():
    source = FakeSource(
        MessageNode(id="A", role="user", text="a"),
        MessageNode(id="B", role="assistant", text="b", parent_message_id="A", deleted=True),
        MessageNode(id="C", role="user", text="c", parent_message_id="B"),
    )
    messages = await ContextBuilder(source, no_images).build("C", 10)
    assert [m["content"] for m in messages] == ["a", "c"]


async def test_cycle_terminates():
    source = FakeSource(
        MessageNode(id="X", role="user", text="x", parent_message_id="Y"),
        MessageNode(id="Y", role="assistant", text="y", parent_message_id="X"),
    )
    messages = await ContextBuilder(source, no_images).build("X", 50)
    assert [m["content"] for m in messages] == ["y", "x"]


async def test_long_deleted_chain_is_walked_a_bounded_number_of_steps():
    nodes = [MessageNode(id="n0", role="user", text="root")]
    for i in range(1, 100):
        nodes.append(MessageNode(id=f"n{i}", role="user", text=f"gone {i}",
                                 parent_message_id=f"n{i - 1}", deleted=True))
    source = FakeSource(*nodes)

    messages = await ContextBuilder(source, no_images, steps_per_message=4).build("n99", 2)
    assert messages == []
    assert len(source.lookups) == 8


async def test_scope_is_forwarded_to_every_lookup():
    source = chain()
    await ContextBuilder(source, no_images).build("C", 10, user_id=1, room_id=5)
    assert source.scopes == [{"user_id": 1, "room_id": 5}] * 3


async def test_images_become_content_parts():
    async def resolve(key):
        return None if key == "missing.png" else f"data:image/png;base64,{key}"

    source = FakeSource(
        MessageNode(id="P", role="user", text="look", images=["1/a.png", "missing.png"]),
    )
    messages = await ContextBuilder(source, resolve).build("P", 5)
    assert messages == [{
        "role": "user",
        "content": [
            {"type": "text", "text": "look"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,1/a.png"}},
        ],
    }]


async def test_build_content_without_images_is_plain_text():
    assert await build_content("hi", [], no_images) == "hi"



def test_drop_images_flattens_content_parts():
    messages = [
        {"role": "user", "content": [
            {"type": "text", "text": "look"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,xx"}},
        ]},
        {"role": "assistant", "content": "a cat"},
    ]
    assert drop_images(messages) == [
        {"role": "user", "content": "look"},
        {"role": "assistant", "content": "a cat"},
    ]
