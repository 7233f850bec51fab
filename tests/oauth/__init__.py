"""OAuth tests: PKCE, discovery, token refresh and the authorization-code flow."""
