from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence
from urllib.parse import urlencode

from graphquota.providers.batch import Attachment, BatchExecutor, BatchRequestBuilder, build_operation
from graphquota.providers.errors import BatchValidationError
from graphquota.providers.execution_types import BatchResult


logger = logging.getLogger("graphquota.batch")

DEFAULT_AD_STATUS = "PAUSED"


def normalize_account_id(account_id: str) -> str:
    normalized = str(account_id).strip().removeprefix("act_")
    if not normalized:
        raise BatchValidationError("Ad account id is required.")
    return normalized


def _ad_body(ad: Mapping[str, Any], creative_id: str, name_key: str = "name") -> dict[str, Any]:
    return {
        "name": ad.get(name_key),
        "adset_id": ad.get("adset_id"),
        "status": ad.get("status") or DEFAULT_AD_STATUS,
        "creative": {"creative_id": creative_id},
    }


async def batch_create_ads(
    executor: BatchExecutor,
    account_id: str,
    ads: Sequence[Mapping[str, Any]],
    access_token: str,
) -> list[BatchResult]:
    account = normalize_account_id(account_id)
    operations = [
        build_operation("POST", f"act_{account}/ads", _ad_body(ad, ad.get("creative_id")), name=f"create-ad-{index}")
        for index, ad in enumerate(ads)
    ]
    return await executor.execute_chunked(operations, access_token, account_id=account)


async def batch_create_ad_creatives(
    executor: BatchExecutor,
    account_id: str,
    creatives: Sequence[Mapping[str, Any]],
    access_token: str,
) -> list[BatchResult]:
    account = normalize_account_id(account_id)
    operations = [
        build_operation(
            "POST",
            f"act_{account}/adcreatives",
            {"name": creative.get("name"), "object_story_spec": creative.get("object_story_spec")},
            name=f"create-creative-{index}",
        )
        for index, creative in enumerate(creatives)
    ]
    return await executor.execute_chunked(operations, access_token, account_id=account)


async def batch_create_creatives_and_ads(
    executor: BatchExecutor,
    account_id: str,
    ads: Sequence[Mapping[str, Any]],
    access_token: str,
) -> list[BatchResult]:
    """Create a creative and the ad that uses it for every entry, in dependent pairs.

    Results alternate creative, ad, creative, ad. Each ad references its
    creative's id by name, so a pair is never split across physical requests.
    """
    if executor.batch_size_limit < 2:
        raise BatchValidationError("Creative and ad pairs need a batch size of at least 2.")
    account = normalize_account_id(account_id)
    builder = BatchRequestBuilder()
    for index, ad in enumerate(ads):
        creative = builder.add(
            "POST",
            f"act_{account}/adcreatives",
            {
                "name": ad.get("creative_name") or ad.get("ad_name"),
                "object_story_spec": ad.get("object_story_spec"),
            },
            name=f"create-creative-{index}",
        )
        builder.add(
            "POST",
            f"act_{account}/ads",
            _ad_body(ad, creative.ref("id"), name_key="ad_name"),
            name=f"create-ad-{index}",
        )
    pair_aligned = executor.batch_size_limit - executor.batch_size_limit % 2
    return await executor.execute_chunked(builder.operations, access_token, account_id=account, chunk_size=pair_aligned)


async def batch_update_campaign_status(
    executor: BatchExecutor,
    campaign_ids: Sequence[str],
    status: str,
    access_token: str,
) -> list[BatchResult]:
    operations = [
        build_operation("POST", str(campaign_id), {"status": status}, name=f"update-campaign-{index}")
        for index, campaign_id in enumerate(campaign_ids)
    ]
    return await executor.execute_chunked(operations, access_token)


async def batch_upload_images(
    executor: BatchExecutor,
    account_id: str,
    images: Sequence[Attachment],
    access_token: str,
) -> list[BatchResult]:
    account = normalize_account_id(account_id)
    attachments: dict[str, Attachment] = {}
    operations = []
    for index, image in enumerate(images):
        file_name = f"file{index}"
        attachments[file_name] = image
        operations.append(
            build_operation(
                "POST",
                f"act_{account}/adimages",
                {"name": f"image-{index}"},
                name=f"upload-image-{index}",
                attached_files=[file_name],
            )
        )
    logger.info("Uploading %s images for account %s", len(operations), account, extra={"account_id": account})
    return await executor.execute_chunked(operations, access_token, attachments, account_id=account)


async def batch_fetch_account_data(
    executor: BatchExecutor,
    account_ids: Sequence[str],
    fields: str | Sequence[str],
    access_token: str,
) -> list[BatchResult]:
    field_list = fields if isinstance(fields, str) else ",".join(fields)
    operations = [
        build_operation(
            "GET",
            f"act_{normalize_account_id(account_id)}?{urlencode({'fields': field_list})}",
            name=f"fetch-account-{index}",
        )
        for index, account_id in enumerate(account_ids)
    ]
    return await executor.execute_chunked(operations, access_token)
