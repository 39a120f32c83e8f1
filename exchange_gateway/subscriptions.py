"""
Exchange Gateway - Subscription Registry.

============================================================
PURPOSE
============================================================
Reference-counted topic subscriptions for one streaming session.

Many callers may listen to the same topic; only the first
acquire and the last release produce wire commands. The registry
tracks two sets:

- desired: topics with at least one listener (ref counted)
- wired:   topics subscribed on the live connection

and emits subscribe/unsubscribe commands for the difference.

All methods are synchronous and must run on the session's event
loop, which serializes concurrent acquire/release calls.

============================================================
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Set

from .types import Topic


logger = logging.getLogger(__name__)


TopicSender = Callable[[List[Topic]], None]


@dataclass
class SubscriptionEntry:
    """A desired topic and its listener count (always >= 1)."""

    topic: Topic
    listener_count: int = 0


@dataclass(eq=False)
class SubscriptionToken:
    """Handle returned by acquire(). Releasing twice is a no-op."""

    topic: Topic
    token_id: int
    released: bool = field(default=False)


class SubscriptionRegistry:
    """
    Reference-counting subscription registry.
    """

    def __init__(self, send_subscribe: TopicSender, send_unsubscribe: TopicSender):
        """
        Initialize registry.

        Args:
            send_subscribe: Emits a subscribe command for topics
            send_unsubscribe: Emits an unsubscribe command for topics
        """
        self._send_subscribe = send_subscribe
        self._send_unsubscribe = send_unsubscribe

        self._entries: Dict[Topic, SubscriptionEntry] = {}
        self._wired: Set[Topic] = set()
        self._ready = False
        self._ids = itertools.count(1)

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def desired_topics(self) -> List[Topic]:
        """Topics with at least one listener, in registration order."""
        return list(self._entries)

    @property
    def wired_topics(self) -> Set[Topic]:
        return set(self._wired)

    @property
    def is_ready(self) -> bool:
        return self._ready

    def listener_count(self, topic: Topic) -> int:
        entry = self._entries.get(topic)
        return entry.listener_count if entry else 0

    def __contains__(self, topic: Topic) -> bool:
        return topic in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # --------------------------------------------------------
    # ACQUIRE / RELEASE
    # --------------------------------------------------------

    def acquire(self, topic: Topic) -> SubscriptionToken:
        """
        Register interest in a topic.

        The first listener of a topic subscribes it on the wire when the
        session is ready; otherwise it is queued for the next ready
        transition.
        """
        entry = self._entries.get(topic)
        if entry is None:
            entry = SubscriptionEntry(topic=topic)
            self._entries[topic] = entry
            logger.debug(f"Topic added: {topic}")
            if self._ready:
                self._wire([topic])

        entry.listener_count += 1
        return SubscriptionToken(topic=topic, token_id=next(self._ids))

    def release(self, token: SubscriptionToken) -> bool:
        """
        Drop one listener.

        Returns:
            True if this released the topic's last listener
        """
        if token.released:
            return False
        token.released = True

        entry = self._entries.get(token.topic)
        if entry is None:
            return False

        entry.listener_count -= 1
        if entry.listener_count > 0:
            return False

        del self._entries[token.topic]
        logger.debug(f"Topic removed: {token.topic}")

        if token.topic in self._wired:
            self._wired.discard(token.topic)
            self._send_unsubscribe([token.topic])
        return True

    # --------------------------------------------------------
    # CONNECTION LIFECYCLE
    # --------------------------------------------------------

    def replay(self) -> List[Topic]:
        """Subscribe every desired topic not yet wired on this connection."""
        pending = [topic for topic in self._entries if topic not in self._wired]
        if pending:
            self._wire(pending)
        return pending

    def mark_ready(self) -> List[Topic]:
        """Session became ready: flush topics queued while connecting."""
        self._ready = True
        return self.replay()

    def mark_closed(self) -> None:
        """Connection lost: nothing is wired anymore, desired topics stay."""
        self._ready = False
        self._wired.clear()

    def clear(self) -> None:
        """Forget everything without sending commands (disposal)."""
        self._entries.clear()
        self._wired.clear()
        self._ready = False

    def _wire(self, topics: List[Topic]) -> None:
        self._wired.update(topics)
        self._send_subscribe(topics)
