import unittest

from ig_direct.events import ErrorEvent, EventBus, MessageEvent, PollingStopped, TypingEvent
from ig_direct.models import MessageItem


def _msg(item_id: str = 'i1') -> MessageEvent:
    item = MessageItem(item_id=item_id, user_id='7', text='hey', timestamp=1)
    return MessageEvent(thread_id='t1', item_id=item_id, user_id='7', text='hey', timestamp=1, item=item)


class TestEventBus(unittest.TestCase):
    def setUp(self) -> None:
        self.logs: list[str] = []
        self.bus = EventBus(log=self.logs.append)

    def test_every_subscriber_gets_the_event_in_order(self) -> None:
        calls: list[str] = []
        self.bus.subscribe(MessageEvent, lambda ev: calls.append('a:' + ev.item_id))
        self.bus.subscribe(MessageEvent, lambda ev: calls.append('b:' + ev.item_id))
        self.assertEqual(self.bus.publish(_msg()), 2)
        self.assertEqual(calls, ['a:i1', 'b:i1'])

    def test_dispatch_is_by_kind(self) -> None:
        typing: list[TypingEvent] = []
        self.bus.subscribe(TypingEvent, typing.append)
        self.assertEqual(self.bus.publish(_msg()), 0)
        self.bus.publish(TypingEvent(thread_id='t1', user_id='7'))
        self.assertEqual(len(typing), 1)

    def test_failing_handler_is_isolated(self) -> None:
        got: list[ErrorEvent] = []

        def boom(_ev: ErrorEvent) -> None:
            raise RuntimeError('handler bug')

        self.bus.subscribe(ErrorEvent, boom)
        self.bus.subscribe(ErrorEvent, got.append)
        self.assertEqual(self.bus.publish(ErrorEvent(message='x')), 1)
        self.assertEqual(len(got), 1)
        self.assertTrue(any('handler bug' in line for line in self.logs))

    def test_unknown_kind_is_rejected(self) -> None:
        with self.assertRaises(TypeError):
            self.bus.subscribe(dict, lambda _ev: None)

    def test_unsubscribe(self) -> None:
        got: list[PollingStopped] = []
        self.bus.subscribe(PollingStopped, got.append)
        self.assertEqual(self.bus.handler_count(PollingStopped), 1)
        self.assertTrue(self.bus.unsubscribe(PollingStopped, got.append))
        self.assertFalse(self.bus.unsubscribe(PollingStopped, got.append))
        self.bus.publish(PollingStopped())
        self.assertEqual(got, [])

    def test_handler_may_subscribe_during_publish(self) -> None:
        late: list[MessageEvent] = []

        def first(_ev: MessageEvent) -> None:
            self.bus.subscribe(MessageEvent, late.append)

        self.bus.subscribe(MessageEvent, first)
        self.bus.publish(_msg('i1'))
        self.assertEqual(late, [])
        self.bus.publish(_msg('i2'))
        self.assertEqual([e.item_id for e in late], ['i2'])
