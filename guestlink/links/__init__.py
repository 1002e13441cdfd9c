"""Link registry: owner-created invitations that mint guest sessions."""
