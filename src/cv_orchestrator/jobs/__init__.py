"""Job lifecycle, scheduling and execution."""
