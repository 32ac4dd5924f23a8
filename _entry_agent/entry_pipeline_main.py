"""
Entry Pipeline — Postbox

PURPOSE:
    Runs one submission end to end. Each stage lives in its own file; this
    module sequences them, decides what to do with their results, and turns
    every failure into a structured result the caller can act on.

    Stage flow:
        ConfigLoading -> SpamCheck -> FieldValidation -> FieldGeneration
        -> Transform -> InternalFieldInjection -> Serialization
        -> PathResolution -> Dispatch -> Result

    The first stage that fails stops the pipeline. Nothing is retried and
    nothing already written to GitHub is rolled back.

    There is also a second, independent flow for moderated entries:
    handle_merged_review() runs when a pull request is merged, reads the
    callback payload back out of the PR body and sends the reply
    notifications that were held back at submission time.

CALLED BY:
    _mcp_server/mcp_entry_server.py, or any host that receives form posts.

RESULT SHAPES:
    success: {"success": True, "fields": {...}, "redirect": "<url>" | False}
    failure: {"success": False, "stage": "<stage>", "errors": [{code, kind, data}]}

DESIGN DECISIONS:
    - One EntryPipeline per request. The site config is loaded once and
      cached on the instance; nothing is shared between requests.
    - Notification side effects (subscribing the submitter, emailing the
      thread) run as background tasks. If they fail we log it; the entry is
      already committed and the submitter still gets a success.
    - Blocking HTTP clients run in worker threads (see github_gateway.py), so
      every external call is an await point.
"""

import asyncio
import logging
import uuid
from typing import Callable, Optional

import requests

from _entry_agent.config import ServiceConfig, load_config
from _entry_agent.error_codes import EntryError, make_error
from _entry_agent.github_gateway import GitHubGateway
from _entry_agent.placeholder_resolver import resolve_placeholders
from _entry_agent.review_payload import ReviewPayload
from _entry_agent.stage_1_load_site_config import RSADecrypter, load_site_config
from _entry_agent.stage_2_check_for_spam import AkismetClient, check_for_spam
from _entry_agent.stage_3_validate_fields import validate_fields
from _entry_agent.stage_4_apply_generated_fields import apply_generated_fields
from _entry_agent.stage_5_apply_transforms import apply_internal_fields, apply_transforms
from _entry_agent.stage_6_serialize_entry import serialize_entry
from _entry_agent.stage_7_dispatch_entry import dispatch_entry
from _entry_agent.subscriptions_manager import MailgunClient, SubscriptionsManager

logger = logging.getLogger(__name__)


class EntryPipeline:
    """
    Processes a single submission for one repository and branch.

    Args:
        parameters:  {"username", "repository", "branch"} of the target repo.
        fields:      Submitted form fields.
        options:     Caller directives (parent, subscribe, redirect, origin, field).
        gateway:     Version-control gateway. Defaults to a GitHubGateway built
                     from the service config.
        service_config: ServiceConfig. Defaults to load_config().
        spam_checker: Object with check_spam_async(). Defaults to Akismet when
                     the service has Akismet credentials.
        decrypt:     Decrypt capability for encrypted site config values.
                     Defaults to RSADecrypter when a private key is configured.
        subscriptions_factory: Callable(site_config) -> SubscriptionsManager or
                     None; raises ValueError when the setup is unusable.
                     Defaults to Mailgun-backed subscriptions.
        entry_id:    Override the generated unique entry id (tests).
    """

    def __init__(
        self,
        parameters: dict,
        fields: Optional[dict] = None,
        options: Optional[dict] = None,
        gateway=None,
        service_config: Optional[ServiceConfig] = None,
        spam_checker=None,
        decrypt: Optional[Callable[[str], str]] = None,
        subscriptions_factory: Optional[Callable] = None,
        entry_id: Optional[str] = None
    ):
        self.parameters = dict(parameters)
        self.fields = dict(fields or {})
        self.options = dict(options or {})
        self.service_config = service_config or load_config()

        self.gateway = gateway or GitHubGateway(
            owner=self.parameters.get("username"),
            repo=self.parameters.get("repository"),
            branch=self.parameters.get("branch"),
            token=self.service_config.github_token,
            base_url=self.service_config.github_base_url,
            timeout=self.service_config.request_timeout_seconds,
        )

        if spam_checker is None and self.service_config.akismet_api_key:
            spam_checker = AkismetClient(
                site=self.service_config.akismet_site,
                api_key=self.service_config.akismet_api_key,
                timeout=self.service_config.request_timeout_seconds,
            )
        self.spam_checker = spam_checker

        if decrypt is None and self.service_config.rsa_private_key:
            decrypt = RSADecrypter(self.service_config.rsa_private_key)
        self.decrypt = decrypt

        self.subscriptions_factory = subscriptions_factory or self._initialise_subscriptions

        self.uid = entry_id or str(uuid.uuid1())
        self.config_path = None
        self.ip = None
        self.user_agent = None
        self.site_config = None
        self._background_tasks = set()

    # -----------------------------------------------------------------------
    # Request context setters
    # -----------------------------------------------------------------------

    def set_config_path(self, config_path: dict):
        self.config_path = config_path

    def set_ip(self, ip: str):
        self.ip = ip

    def set_user_agent(self, user_agent: str):
        self.user_agent = user_agent

    # -----------------------------------------------------------------------
    # Site config
    # -----------------------------------------------------------------------

    async def get_site_config(self, force: bool = False) -> dict:
        """
        Load and validate the site config, once per pipeline instance.

        Returns the stage 1 result dict. Pass force=True to re-read it.
        """
        if self.site_config is not None and not force:
            return {"valid": True, "errors": [], "site_config": self.site_config}

        result = await load_site_config(
            self.gateway,
            self.config_path,
            self.parameters,
            self.options,
            self.decrypt,
        )
        if result["valid"]:
            self.site_config = result["site_config"]
        return result

    # -----------------------------------------------------------------------
    # Main flow
    # -----------------------------------------------------------------------

    async def process_entry(self) -> dict:
        """
        Run the full submission pipeline.

        Returns the success or failure result described in the module docstring.
        Never raises for pipeline failures.
        """
        logger.info(
            "Processing entry %s for %s/%s@%s",
            self.uid,
            self.parameters.get("username"),
            self.parameters.get("repository"),
            self.parameters.get("branch"),
        )

        stage = "ConfigLoading"
        try:
            config_result = await self.get_site_config()
            if not config_result["valid"]:
                return self._failure(stage, config_result["errors"])
            site_config = self.site_config

            stage = "SpamCheck"
            spam_result = await check_for_spam(
                self.fields, site_config, self.spam_checker, self.ip, self.user_agent
            )
            if not spam_result["valid"]:
                return self._failure(stage, spam_result["errors"])

            stage = "FieldValidation"
            validation = validate_fields(self.fields, site_config)
            if not validation["valid"]:
                return self._failure(stage, validation["errors"])
            validated_fields = validation["fields"]

            stage = "FieldGeneration"
            fields = apply_generated_fields(validated_fields, site_config, self.options)

            stage = "Transform"
            fields = await apply_transforms(fields, site_config)

            stage = "InternalFieldInjection"
            extended_fields = apply_internal_fields(fields, self.uid, self.options)

            stage = "Serialization"
            serialized = serialize_entry(extended_fields, site_config)
            if not serialized["valid"]:
                return self._failure(stage, serialized["errors"])

            stage = "PathResolution"
            file_path = self.get_new_file_path(fields, serialized["extension"])
            commit_message = self._resolve(site_config.get("commitMessage"), fields)

            stage = "Dispatch"
            payload = ReviewPayload(
                config_path=self.config_path,
                fields=fields,
                options=self.options,
                parameters=self.parameters,
            )

            dispatch = await dispatch_entry(
                self.gateway,
                site_config,
                content=serialized["content"],
                file_path=file_path,
                commit_message=commit_message,
                target_branch=self.parameters.get("branch"),
                review_branch=f"{self.service_config.branch_prefix}_{self.uid}",
                fields=fields,
                payload=payload,
            )
        except EntryError as e:
            return self._failure(stage, e.errors)

        self.fields = fields
        logger.info("Entry %s committed to %s on %s", self.uid, file_path, dispatch["branch"])

        subscriptions = self._get_subscriptions_quietly(site_config)
        self._maybe_subscribe(subscriptions, validated_fields)

        # Moderated entries notify from handle_merged_review() instead
        parent = self.options.get("parent")
        if subscriptions and parent and not dispatch["moderated"]:
            self._run_in_background(
                subscriptions.send_async(parent, fields, self.options, site_config.get("name")),
                f"notifying thread {parent}",
            )

        return {
            "success": True,
            "fields": fields,
            "redirect": self.options.get("redirect") or False,
        }

    async def process_merge(self, fields: dict, options: dict) -> dict:
        """
        Send the held-back reply notification for a merged, moderated entry.

        Re-validates the site config first, since it may have changed since
        the entry was submitted.
        """
        self.fields = dict(fields)
        self.options = dict(options)

        stage = "ConfigLoading"
        try:
            config_result = await self.get_site_config()
            if not config_result["valid"]:
                return self._failure(stage, config_result["errors"])

            stage = "Notification"
            try:
                subscriptions = self.subscriptions_factory(self.site_config)
            except ValueError as e:
                raise EntryError("NOTIFICATION_FAILED", message=f"Could not set up notifications: {e}")

            parent = self.options.get("parent")
            if subscriptions is None or not parent:
                return {"success": True, "notified": False}

            notified = await subscriptions.send_async(
                parent, self.fields, self.options, self.site_config.get("name")
            )
        except EntryError as e:
            return self._failure(stage, e.errors)

        return {"success": True, "notified": notified}

    async def wait_for_background_tasks(self):
        """Wait for pending notification tasks; their failures are already logged."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def get_new_file_path(self, fields: dict, extension: str) -> str:
        """<resolved path>/<resolved filename or entry id>.<extension>"""
        filename_template = self.site_config.get("filename")
        if filename_template:
            filename = self._resolve(filename_template, fields)
        else:
            filename = self.uid

        path = self._resolve(self.site_config.get("path"), fields)
        if path.endswith("/"):
            path = path[:-1]

        return f"{path}/{filename}.{extension}"

    def _resolve(self, template, fields: dict) -> str:
        return resolve_placeholders(
            str(template or ""),
            {"fields": fields, "options": self.options},
            self.uid,
        )

    def _initialise_subscriptions(self, site_config) -> Optional[SubscriptionsManager]:
        if not site_config.get("notifications.enabled"):
            return None

        mailer = MailgunClient(
            api_key=site_config.get("notifications.apiKey") or self.service_config.email_api_key,
            domain=site_config.get("notifications.domain") or self.service_config.email_domain,
            api_base_url=self.service_config.email_api_base_url,
            timeout=self.service_config.request_timeout_seconds,
        )
        from_address = (
            site_config.get("notifications.fromAddress")
            or self.service_config.email_from_address
        )
        return SubscriptionsManager(self.parameters, mailer, from_address)

    def _get_subscriptions_quietly(self, site_config) -> Optional[SubscriptionsManager]:
        # A broken notifications setup must not block the entry itself
        try:
            return self.subscriptions_factory(site_config)
        except ValueError as e:
            logger.warning("Notifications disabled for entry %s: %s", self.uid, e)
            return None

    def _maybe_subscribe(self, subscriptions, validated_fields: dict):
        parent = self.options.get("parent")
        subscribe_field = self.options.get("subscribe")
        if not (subscriptions and parent and subscribe_field):
            return

        # Use the address as submitted, before any md5 transform hashed it
        address = validated_fields.get(subscribe_field)
        if address:
            self._run_in_background(
                subscriptions.subscribe_async(parent, address),
                f"subscribing to thread {parent}",
            )

    def _run_in_background(self, coro, description: str):
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(lambda t: self._on_background_done(t, description))

    def _on_background_done(self, task, description: str):
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Background task failed (%s) for entry %s: %s",
                description, self.uid, exc, exc_info=exc,
            )

    def _failure(self, stage: str, errors: list) -> dict:
        logger.warning(
            "Entry %s failed at %s: %s",
            self.uid, stage, ", ".join(e.get("code", "?") for e in errors),
        )
        return {"success": False, "stage": stage, "errors": errors}


async def handle_merged_review(
    gateway,
    review_id: int,
    service_config: Optional[ServiceConfig] = None,
    **pipeline_kwargs
) -> dict:
    """
    React to a pull request event for a moderated entry.

    Only merged PRs from Postbox branches are handled. For those, the callback
    payload is read out of the PR body, the thread's subscribers are notified,
    and the entry branch is deleted.

    Args:
        gateway:         Gateway for the repository the PR belongs to.
        review_id:       Pull request number.
        service_config:  ServiceConfig. Defaults to load_config().
        pipeline_kwargs: Passed through to EntryPipeline (spam_checker,
                         decrypt, subscriptions_factory).

    Returns:
        dict with 'success' and 'handled', plus 'notified' when handled, or
        the usual failure shape.
    """
    service_config = service_config or load_config()

    try:
        review = await gateway.get_review_async(review_id)
    except EntryError as e:
        return {"success": False, "stage": "ReviewLookup", "errors": e.errors}

    prefix = f"{service_config.branch_prefix}_"
    if not review.merged or not review.source_branch.startswith(prefix):
        return {"success": True, "handled": False}

    try:
        payload = ReviewPayload.from_review_body(review.body)
    except EntryError as e:
        return {"success": False, "stage": "ReviewLookup", "errors": e.errors}

    result = {"success": True, "notified": False}
    if payload is not None:
        pipeline = EntryPipeline(
            payload.parameters,
            gateway=gateway,
            service_config=service_config,
            **pipeline_kwargs,
        )
        pipeline.set_config_path(payload.config_path)
        result = await pipeline.process_merge(payload.fields, payload.options)

    try:
        await gateway.delete_branch_async(review.source_branch)
    except (EntryError, requests.RequestException) as e:
        logger.warning("Could not delete merged branch %s: %s", review.source_branch, e)

    return {**result, "handled": True}


async def process_entry(
    parameters: dict,
    fields: dict,
    options: dict,
    config_path: dict,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    **pipeline_kwargs
) -> dict:
    """Convenience wrapper: build a pipeline, run it, wait for side effects."""
    pipeline = EntryPipeline(parameters, fields, options, **pipeline_kwargs)
    pipeline.set_config_path(config_path)
    pipeline.set_ip(ip)
    pipeline.set_user_agent(user_agent)

    result = await pipeline.process_entry()
    await pipeline.wait_for_background_tasks()
    return result


def build_error_result(code: str, data=None) -> dict:
    """Failure result for problems detected before a pipeline exists (bad input)."""
    return {"success": False, "stage": "Request", "errors": [make_error(code, data)]}
