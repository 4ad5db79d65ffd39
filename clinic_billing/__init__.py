"""Order generation and billing orchestration for the clinic backend."""
