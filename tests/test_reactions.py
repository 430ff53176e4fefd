import unittest

from chathub.messages import toggle_reaction_map


class TestToggleReactionMap(unittest.TestCase):

    def test_add_then_remove_drops_the_key(self):
        reactions, added = toggle_reaction_map({}, "👍", 1)
        self.assertTrue(added)
        self.assertEqual(reactions, {"👍": [1]})

        reactions, added = toggle_reaction_map(reactions, "👍", 1)
        self.assertFalse(added)
        self.assertEqual(reactions, {})

    def test_toggle_twice_restores_original_state(self):
        original = {"👍": [2, 5], "🎉": [3]}
        once, _ = toggle_reaction_map(original, "👍", 7)
        twice, _ = toggle_reaction_map(once, "👍", 7)
        self.assertEqual(twice, original)

        once, _ = toggle_reaction_map(original, "🎉", 3)
        twice, _ = toggle_reaction_map(once, "🎉", 3)
        self.assertEqual(twice, original)

    def test_other_reactors_are_untouched(self):
        reactions, _ = toggle_reaction_map({"👍": [1, 2]}, "👍", 1)
        self.assertEqual(reactions, {"👍": [2]})

    def test_user_appears_once_per_emoji(self):
        reactions, _ = toggle_reaction_map({"👍": [4, 4, 1]}, "👍", 9)
        self.assertEqual(reactions, {"👍": [1, 4, 9]})

    def test_empty_lists_and_none_are_normalized(self):
        reactions, _ = toggle_reaction_map({"😢": []}, "👍", 1)
        self.assertEqual(reactions, {"👍": [1]})
        reactions, _ = toggle_reaction_map(None, "👍", 1)
        self.assertEqual(reactions, {"👍": [1]})

    def test_input_is_not_mutated(self):
        original = {"👍": [1]}
        toggle_reaction_map(original, "👍", 1)
        self.assertEqual(original, {"👍": [1]})


if __name__ == "__main__":
    unittest.main()
