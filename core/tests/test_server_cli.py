import io
import json
import os
import tempfile
import unittest

from dmsync import rooms, shortid
from dmsync.server import main, simulate


class ServerCliTests(unittest.TestCase):
    def test_room_id_command(self):
        output = io.StringIO()
        self.assertEqual(main(["room-id", "bob", "alice"], output=output), 0)
        self.assertEqual(output.getvalue().strip(), rooms.room_id("alice", "bob"))

    def test_short_id_command(self):
        output = io.StringIO()
        main(["short-id", "alice@x.com"], output=output)
        self.assertEqual(output.getvalue().strip(), shortid.derive("alice@x.com"))

    def test_simulate_scenario(self):
        frames = [
            {"t": "session.start", "user_id": "alice", "email": "alice@x.com"},
            {"t": "session.start", "user_id": "bob", "email": "bob@y.com"},
            {"t": "profile.search", "user_id": "alice", "short_id": shortid.derive("bob@y.com")},
            {"t": "friend.add", "user_id": "alice", "peer_id": "bob"},
            {"t": "friend.add", "user_id": "alice", "peer_id": "bob"},
            {"t": "friends.list", "user_id": "bob"},
            {"t": "room.open", "user_id": "bob", "peer_id": "alice"},
            {"t": "message.send", "user_id": "alice", "peer_id": "bob", "text": "hi"},
            {"t": "message.send", "user_id": "alice", "peer_id": "bob", "text": " "},
        ]
        output = io.StringIO()

        simulate(frames, output)

        lines = [json.loads(line) for line in output.getvalue().splitlines()]
        kinds = [line["t"] for line in lines]
        self.assertEqual(
            kinds,
            ["profile", "profile", "search", "friend.added", "error", "friends", "room.snapshot", "sent", "room.message", "error"],
        )
        self.assertEqual(lines[2]["profile"]["id"], "bob")
        self.assertEqual(lines[4]["code"], "AlreadyFriends")
        self.assertEqual([p["id"] for p in lines[5]["friends"]], ["alice"])
        self.assertEqual(lines[8]["user_id"], "bob")
        self.assertEqual(lines[8]["message"]["text"], "hi")
        self.assertEqual(lines[8]["message"]["author"]["id"], "alice")
        self.assertEqual(lines[9]["code"], "EmptyMessage")

    def test_simulate_reads_json_lines_file(self):
        with tempfile.NamedTemporaryFile("w", suffix=".jsonl", delete=False) as handle:
            handle.write(json.dumps({"t": "session.start", "user_id": "anon"}) + "\n")
            path = handle.name
        self.addCleanup(os.remove, path)
        output = io.StringIO()

        self.assertEqual(main(["simulate", "-f", path], output=output), 0)

        line = json.loads(output.getvalue())
        self.assertEqual(line["profile"]["short_id"], shortid.UNASSIGNED_SHORT_ID)

    def test_malformed_frames_become_error_lines(self):
        frames = [
            {"t": "friends.list", "user_id": "ghost"},
            {"t": "session.start", "user_id": "alice", "email": "alice@x.com"},
            {"t": "friend.add", "user_id": "alice"},
            {"t": "room.open", "user_id": "alice"},
            {"t": "session.start"},
            {"t": "friends.list", "user_id": "alice"},
        ]
        output = io.StringIO()

        simulate(frames, output)

        lines = [json.loads(line) for line in output.getvalue().splitlines()]
        self.assertEqual([line["t"] for line in lines], ["error", "profile", "error", "error", "error", "friends"])
        for index in (0, 2, 3, 4):
            self.assertEqual(lines[index]["code"], "invalid_frame")
        self.assertEqual(lines[0]["user_id"], "ghost")
        self.assertIn("peer_id", lines[2]["message"])
        self.assertEqual(lines[5]["friends"], [])

    def test_unknown_frame_is_an_error(self):
        with self.assertRaises(ValueError):
            simulate([{"t": "bogus"}], io.StringIO())


if __name__ == "__main__":
    unittest.main()
