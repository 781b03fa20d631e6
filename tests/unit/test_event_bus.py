import threading
from videoconverter.infrastructure.event_bus import EventBus
from videoconverter.domain.events import Event, FileDropped, PathSkipped

class MockEvent(Event):
    text: str

class ChildEvent(MockEvent):
    pass

def test_event_bus_subscribe_publish():
    bus = EventBus()
    received_events = []

    def callback(event: MockEvent):
        received_events.append(event)

    bus.subscribe(MockEvent, callback)

    event = MockEvent(text="hello")
    bus.publish(event)

    assert len(received_events) == 1
    assert received_events[0].text == "hello"

def test_event_bus_multiple_subscribers():
    bus = EventBus()
    results = {"a": False, "b": False}

    bus.subscribe(MockEvent, lambda e: results.update({"a": True}))
    bus.subscribe(MockEvent, lambda e: results.update({"b": True}))

    bus.publish(MockEvent(text="test"))

    assert results["a"] is True
    assert results["b"] is True

def test_event_bus_decorator_subscribe():
    bus = EventBus()
    received = []

    @bus.subscribe(MockEvent)
    def on_event(event: MockEvent):
        received.append(event)

    bus.publish(MockEvent(text="decorator"))
    assert len(received) == 1
    assert received[0].text == "decorator"

def test_event_bus_base_class_subscriber_sees_subclasses():
    bus = EventBus()
    everything = []
    children = []
    bus.subscribe(Event, everything.append)
    bus.subscribe(ChildEvent, children.append)

    bus.publish(MockEvent(text="parent"))
    bus.publish(ChildEvent(text="child"))
    bus.publish(FileDropped(path="/tmp/a.mkv", reason="gone"))

    assert [type(e) for e in everything] == [MockEvent, ChildEvent, FileDropped]
    assert [e.text for e in children] == ["child"]

def test_event_bus_unrelated_event_not_delivered():
    bus = EventBus()
    received = []
    bus.subscribe(PathSkipped, received.append)

    bus.publish(MockEvent(text="ignored"))

    assert received == []

def test_event_bus_publish_from_many_threads():
    bus = EventBus()
    received = []
    lock = threading.Lock()

    def on_event(event):
        with lock:
            received.append(event.text)

    bus.subscribe(MockEvent, on_event)
    threads = [
        threading.Thread(target=lambda i=i: bus.publish(MockEvent(text=str(i))))
        for i in range(20)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(received, key=int) == [str(i) for i in range(20)]
