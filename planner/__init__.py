"""Design team planner: calendar assignment and capacity engine."""
