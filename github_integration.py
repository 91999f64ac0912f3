"""
GitHub bookkeeping

Records the repository, forks and pull requests that belong to a bug. Nothing
here talks to GitHub; clients report what happened and we keep the ledger.
A merged pull request resolves the bug in its author's name.
"""
import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

from auth import get_current_user
from bugs import award_resolution, bug_payload, get_bug_or_404, move_project_stats, status_transition
from database import get_db, transaction, utcnow
from errors import DuplicateState, Forbidden, NotFound, ValidationFailed
from identifiers import populate_bug
from schemas import PULL_REQUEST_STATUSES, Activity, Fork, GithubRepo, PullRequest, PullRequestAuthor
from standardizer import standardize_fork, standardize_github_repo, standardize_pull_request, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/github", tags=["GitHub"])

REPO_URL_RE = re.compile(r"^https?://(?:www\.)?github\.com/([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")


def parse_repo_url(url: str) -> Dict[str, str]:
    match = REPO_URL_RE.match((url or "").strip())
    if not match:
        raise ValidationFailed("Invalid GitHub repository URL")
    owner, name = match.groups()
    return {"url": f"https://github.com/{owner}/{name}", "owner": owner, "name": name}


class LinkRepoPayload(BaseModel):
    repository_url: str
    is_public: bool = True


class ForkPayload(BaseModel):
    github_username: str = Field(..., min_length=1, max_length=39)
    fork_url: str


class PullRequestPayload(BaseModel):
    pr_number: int = Field(..., ge=1)
    pr_url: str
    title: str = Field(..., min_length=1, max_length=300)
    github_username: Optional[str] = None


class PullRequestStatusPayload(BaseModel):
    status: str


@router.post("/link-repo/{bug_id}")
def link_repository(bug_id: str, payload: LinkRepoPayload, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    bug = get_bug_or_404(db, bug_id)
    if bug.get("reported_by") != user["_id"] and user.get("role") != "admin":
        raise Forbidden("Only the reporter or an admin can link a repository")

    repo = GithubRepo(**parse_repo_url(payload.repository_url), is_public=payload.is_public).model_dump()
    activity = Activity(user=user["_id"], action="repository_linked", field="github_repo", new_value=repo["url"]).model_dump()
    db.bug.update_one(
        {"_id": bug["_id"]},
        {"$set": {"github_repo": repo, "updated_at": utcnow()}, "$push": {"activity": activity}},
    )
    logger.info("Linked %s to bug %s", repo["url"], bug.get("bug_id"))
    return success_response(bug_payload(db, bug["_id"]), "Repository linked successfully")


@router.post("/fork/{bug_id}")
def record_fork(bug_id: str, payload: ForkPayload, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    username = payload.github_username.strip()
    with transaction(db) as session:
        bug = get_bug_or_404(db, bug_id, session=session)
        if not bug.get("github_repo"):
            raise ValidationFailed("No GitHub repository is linked to this bug")

        fork = Fork(github_username=username, user_id=user["_id"], fork_url=payload.fork_url.strip()).model_dump()
        activity = Activity(user=user["_id"], action="forked", new_value=fork["fork_url"]).model_dump()
        result = db.bug.update_one(
            {"_id": bug["_id"], "forks.user_id": {"$ne": user["_id"]}},
            {"$push": {"forks": fork, "activity": activity}, "$set": {"updated_at": utcnow()}},
            session=session,
        )
        if result.matched_count == 0:
            raise DuplicateState("You have already forked the repository for this bug")

        if not (user.get("github_profile") or {}).get("username"):
            db.user.update_one(
                {"_id": user["_id"]},
                {"$set": {"github_profile.username": username, "github_profile.url": f"https://github.com/{username}"}},
                session=session,
            )

    return success_response(bug_payload(db, bug["_id"]), "Fork recorded successfully")


@router.post("/pull-request/{bug_id}", status_code=201)
def record_pull_request(bug_id: str, payload: PullRequestPayload, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    username = (payload.github_username or (user.get("github_profile") or {}).get("username") or "").strip()
    if not username:
        raise ValidationFailed("A GitHub username is required")

    with transaction(db) as session:
        bug = get_bug_or_404(db, bug_id, session=session)
        pr = PullRequest(
            number=payload.pr_number,
            url=payload.pr_url.strip(),
            title=payload.title.strip(),
            author=PullRequestAuthor(github_username=username, user_id=user["_id"]),
        ).model_dump()
        activity = Activity(user=user["_id"], action="pull_request_opened", new_value=payload.pr_number).model_dump()
        result = db.bug.update_one(
            {"_id": bug["_id"], "pull_requests.number": {"$ne": payload.pr_number}},
            {"$push": {"pull_requests": pr, "activity": activity}, "$set": {"updated_at": utcnow()}},
            session=session,
        )
        if result.matched_count == 0:
            raise DuplicateState(f"Pull request #{payload.pr_number} is already recorded for this bug")
        db.user.update_one({"_id": user["_id"]}, {"$inc": {"statistics.pull_requests_submitted": 1}}, session=session)

    logger.info("PR #%d recorded on bug %s by %s", payload.pr_number, bug.get("bug_id"), user["_id"])
    return success_response(bug_payload(db, bug["_id"]), "Pull request recorded successfully")


@router.put("/pull-request/{bug_id}/{pr_number}")
def update_pull_request(bug_id: str, pr_number: int, payload: PullRequestStatusPayload, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    if payload.status not in PULL_REQUEST_STATUSES:
        raise ValidationFailed(f"Invalid pull request status. Allowed: {', '.join(PULL_REQUEST_STATUSES)}")

    with transaction(db) as session:
        bug = get_bug_or_404(db, bug_id, session=session)
        pr = next((p for p in bug.get("pull_requests") or [] if p.get("number") == pr_number), None)
        if pr is None:
            raise NotFound(f"Pull request #{pr_number} not found on this bug")

        author_id = (pr.get("author") or {}).get("user_id")
        allowed = {author_id, bug.get("reported_by")}
        if user["_id"] not in allowed and user.get("role") not in ("admin", "manager"):
            raise Forbidden("Only the pull request author, the reporter or a manager can update this pull request")

        now = utcnow()
        newly_merged = payload.status == "merged" and pr.get("status") != "merged"
        pr_sets: Dict[str, Any] = {"pull_requests.$.status": payload.status, "updated_at": now}
        if newly_merged:
            pr_sets["pull_requests.$.merged_at"] = now
        activity = Activity(
            user=user["_id"], action="pull_request_updated", field=f"pull_request#{pr_number}",
            old_value=pr.get("status"), new_value=payload.status, timestamp=now,
        ).model_dump()
        db.bug.update_one(
            {"_id": bug["_id"], "pull_requests.number": pr_number},
            {"$set": pr_sets, "$push": {"activity": activity}},
            session=session,
        )

        if newly_merged:
            if author_id is not None:
                db.user.update_one({"_id": author_id}, {"$inc": {"statistics.pull_requests_merged": 1}}, session=session)
            old_status = bug.get("status") or "open"
            if old_status in ("open", "in-progress"):
                sets, status_activity = status_transition(bug, "resolved", user["_id"], resolver_id=author_id)
                sets["resolution"] = "fixed"
                sets["resolution_pull_request"] = {"number": pr_number, "url": pr.get("url"), "title": pr.get("title")}
                db.bug.update_one({"_id": bug["_id"]}, {"$set": sets, "$push": {"activity": status_activity}}, session=session)
                move_project_stats(db, bug, old_status, "resolved", session=session)
                award_resolution(db, bug["_id"], sets.get("resolved_by"), session=session)
                logger.info("Bug %s resolved by merge of PR #%d", bug.get("bug_id"), pr_number)

    return success_response(bug_payload(db, bug["_id"]), "Pull request updated successfully")


@router.get("/activity/{bug_id}")
def github_activity(bug_id: str, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    bug = populate_bug(db, get_bug_or_404(db, bug_id))
    forks = [standardize_fork(f) for f in bug.get("forks") or []]
    pulls = [standardize_pull_request(p) for p in bug.get("pull_requests") or []]
    return success_response(
        {
            "bug_id": bug.get("bug_id"),
            "github_repo": standardize_github_repo(bug.get("github_repo")),
            "forks": forks,
            "pull_requests": pulls,
            "counts": {
                "forks": len(forks),
                "pull_requests": len(pulls),
                "merged_pull_requests": sum(1 for p in pulls if p["status"] == "merged"),
            },
        },
        "GitHub activity retrieved successfully",
    )
