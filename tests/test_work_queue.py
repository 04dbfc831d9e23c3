import unittest

from identity_fusion.work_queue import WorkQueue


class TestWorkQueue(unittest.TestCase):
    def setUp(self):
        self.queue = WorkQueue([(f"a{i}", i) for i in range(5)], name="accounts")

    def test_take_removes_exactly_once(self):
        self.assertEqual(self.queue.take("a1", by="phase-1"), 1)
        self.assertIsNone(self.queue.take("a1", by="phase-2"))
        self.assertEqual(self.queue.taken_by("a1"), "phase-1")
        self.assertNotIn("a1", self.queue)
        self.assertEqual(len(self.queue), 4)

    def test_taken_key_cannot_return(self):
        self.queue.take("a0", by="phase-1")
        with self.assertRaises(KeyError):
            self.queue.put("a0", 0)

    def test_peek_does_not_remove(self):
        self.assertEqual(self.queue.peek("a2"), 2)
        self.assertIn("a2", self.queue)

    def test_take_where(self):
        taken = self.queue.take_where(lambda _key, value: value % 2 == 0, by="even")
        self.assertEqual(sorted(taken), [0, 2, 4])
        self.assertEqual(self.queue.remaining_keys(), {"a1", "a3"})
        self.assertEqual(self.queue.taken_count("even"), 3)

    def test_drain_in_batches(self):
        batches = list(self.queue.drain(2, by="drain"))
        self.assertEqual([len(batch) for batch in batches], [2, 2, 1])
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.queue.taken_count(), 5)

    def test_drain_is_lazy(self):
        batches = self.queue.drain(2)
        next(batches)
        self.assertEqual(len(self.queue), 3)

    def test_clear(self):
        self.queue.clear()
        self.assertEqual(self.queue.remaining(), [])
        self.assertEqual(self.queue.taken_by("a4"), "cleared")

    def test_iteration_tolerates_removal(self):
        for key in self.queue:
            self.queue.take(key)
        self.assertEqual(len(self.queue), 0)


if __name__ == "__main__":
    unittest.main()
