# Postbox - Entry Agent Package
#
# This package contains the staged pipeline that turns an untrusted form
# submission (a blog comment, a guestbook entry) into a file committed to a
# static site's GitHub repository. Each stage is in its own file following
# the one-function-per-file architecture pattern.
#
# The pipeline is orchestrated by entry_pipeline_main.py. It reads the site's
# own config file from the repo, calls external APIs (Akismet, Mailgun), and
# writes back to GitHub (a direct commit, or a branch + pull request).
#
# Stage flow:
#   1. Load Site Config -> 2. Check For Spam -> 3. Validate Fields
#   -> 4. Apply Generated Fields -> 5. Apply Transforms
#   -> 6. Serialize Entry -> 7. Dispatch Entry

__version__ = "1.0.0"
