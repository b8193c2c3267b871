"""Best-effort integration with the optional external orchestration tool."""
