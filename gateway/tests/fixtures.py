from otr_gateway.conversations import ConversationStore
from otr_gateway.devices import DeviceRegistry


def build_roster():
    """Alice owns A1/A2, Bob owns B1; both are members of conversation c1."""

    registry = DeviceRegistry()
    conversations = ConversationStore()
    devices = {
        "A1": registry.register("alice", "A1"),
        "A2": registry.register("alice", "A2"),
        "B1": registry.register("bob", "B1"),
    }
    conversation = conversations.create("c1", "alice", ["bob"])
    return registry, conversations, conversation, devices
