"""Pure domain layer of the expense export pipeline."""
