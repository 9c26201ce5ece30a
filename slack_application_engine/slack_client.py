"""Thin wrapper utilities around the Slack WebClient."""

from __future__ import annotations

from typing import Any, List, Mapping, Sequence

from slack_sdk import WebClient


class SlackClient:
    """Encapsulate Slack WebClient interactions for easier testing."""

    def __init__(self, *, token: str | None = None, client: WebClient | None = None) -> None:
        if client is None and token is None:
            raise ValueError("Either an instantiated client or a bot token must be provided.")

        self._client = client or WebClient(token=token)

    @property
    def client(self) -> WebClient:
        """Expose the underlying WebClient for advanced use cases."""

        return self._client

    def post_message(
        self,
        *,
        channel: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]] | None = None,
        attachments: Sequence[Mapping[str, Any]] | None = None,
        thread_ts: str | None = None,
        reply_broadcast: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> Mapping[str, Any]:
        """Post a message (optionally into a thread) to a Slack channel."""

        kwargs: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            kwargs["blocks"] = list(blocks)
        if attachments:
            kwargs["attachments"] = list(attachments)
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
            if reply_broadcast:
                kwargs["reply_broadcast"] = True
        if metadata:
            kwargs["metadata"] = dict(metadata)
        return self._client.chat_postMessage(**kwargs)

    def update_message(
        self,
        *,
        channel: str,
        ts: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]] | None = None,
        attachments: Sequence[Mapping[str, Any]] | None = None,
    ) -> Mapping[str, Any]:
        """Update an existing Slack message."""

        kwargs: dict[str, Any] = {"channel": channel, "ts": ts, "text": text}
        if blocks is not None:
            kwargs["blocks"] = list(blocks)
        if attachments is not None:
            kwargs["attachments"] = list(attachments)
        return self._client.chat_update(**kwargs)

    def fetch_message(self, *, channel: str, ts: str) -> Mapping[str, Any] | None:
        """Return the top-level message posted at *ts*, if it still exists."""

        response = self._client.conversations_history(channel=channel, latest=ts, inclusive=True, limit=1)
        for message in response.get("messages") or []:
            if message.get("ts") == ts:
                return message
        return None

    def recent_messages(self, *, channel: str, limit: int = 100, pages: int = 4) -> List[Mapping[str, Any]]:
        """Return up to *pages* pages of channel history, newest first, with app metadata."""

        messages: List[Mapping[str, Any]] = []
        cursor: str | None = None
        for _ in range(pages):
            response = self._client.conversations_history(
                channel=channel, limit=limit, cursor=cursor, include_all_metadata=True
            )
            messages.extend(response.get("messages") or [])
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return messages

    def add_reaction(self, *, channel: str, ts: str, name: str) -> None:
        self._client.reactions_add(channel=channel, timestamp=ts, name=name)

    def reaction_user_ids(self, *, channel: str, ts: str, name: str) -> List[str]:
        response = self._client.reactions_get(channel=channel, timestamp=ts, full=True)
        message = response.get("message") or {}
        for reaction in message.get("reactions") or []:
            if reaction.get("name") == name:
                return list(reaction.get("users") or [])
        return []

    def channel_member_ids(self, *, channel: str) -> List[str]:
        """Return every member of *channel*, following pagination cursors."""

        members: List[str] = []
        cursor: str | None = None
        while True:
            response = self._client.conversations_members(channel=channel, cursor=cursor, limit=200)
            members.extend(response.get("members") or [])
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return members

    def user_info(self, *, user: str) -> Mapping[str, Any]:
        return self._client.users_info(user=user).get("user") or {}

    def lookup_user_by_email(self, *, email: str) -> Mapping[str, Any]:
        return self._client.users_lookupByEmail(email=email).get("user") or {}

    def usergroup_member_ids(self, *, usergroup: str) -> List[str]:
        return list(self._client.usergroups_users_list(usergroup=usergroup).get("users") or [])

    def set_usergroup_members(self, *, usergroup: str, users: Sequence[str]) -> None:
        self._client.usergroups_users_update(usergroup=usergroup, users=",".join(users))

    def open_direct_message(self, *, user: str) -> str:
        response = self._client.conversations_open(users=user)
        return (response.get("channel") or {}).get("id", "")

    def team_name(self) -> str:
        return (self._client.team_info().get("team") or {}).get("name", "")

    def bot_user_id(self) -> str | None:
        return self._client.auth_test().get("user_id")
