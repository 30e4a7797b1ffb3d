"""Story Wizard backend: story compile, storybook illustration, and print fulfilment flows."""
