# Supabase Auth
# Users sign up and log in through Supabase Auth from the frontend; the backend
# only verifies bearer tokens (auth.get_user) and reads the profile row in the
# public users table (see app/modules/tenants/models.py) for tenant and
# active workspace.
