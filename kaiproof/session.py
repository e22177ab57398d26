"""kaiproof.session

Staged sealing of one artifact.

A :class:`SealSession` turns a capsule and an SVG into a sealed bundle
through a chain of stages:

    capsule_hash ─┐
                  ├─ zk ─┐
    svg_hash ─────┘      ├─ bundle_root ─ author_sig ─ sealed
                         │
    (capsule, svg) ──────┘

Each stage is a single-assignment future: the first caller starts it and
every later caller awaits the same result. Changing an input with
:meth:`SealSession.update` cancels the stages that depend on it; callers
waiting on a cancelled stage get :class:`StageSuperseded`, and a stage that
finishes after being superseded has its result discarded. A stage that
failed with a retryable error (the user cancelled the passkey prompt) is
forgotten so the next call starts it again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from kaiproof.artifact import embed_proof_metadata, hash_svg_text
from kaiproof.attestation import attestation_from_bundle
from kaiproof.bundle import ZkInputs, build_bundle_root, compute_bundle_hash, seal_bundle
from kaiproof.capsule import CapsuleLike, capsule_dict, hash_proof_capsule
from kaiproof.errors import KaiproofError, StageSuperseded
from kaiproof.kas import ChallengeScheme, KasEngine
from kaiproof.observability import KaiproofLayer, get_logger

log = get_logger("seal", KaiproofLayer.SESSION)

ZkProver = Callable[[str, str], Awaitable[ZkInputs]]

STAGES = ("capsule_hash", "svg_hash", "zk", "bundle_root", "author_sig", "sealed")

# Stages invalidated when an input changes.
_DEPENDENTS: Dict[str, tuple] = {
    "capsule": ("capsule_hash", "zk", "bundle_root", "author_sig", "sealed"),
    "svg_text": ("svg_hash", "zk", "bundle_root", "author_sig", "sealed"),
}


@dataclass
class SealedArtifact:
    bundle: Dict[str, Any]
    svg_text: str
    attestation: Optional[Dict[str, Any]] = None

    @property
    def bundle_hash(self) -> str:
        return self.bundle["bundleHash"]

    @property
    def signed(self) -> bool:
        return self.bundle.get("authorSig") is not None


class SealSession:
    """
    Incrementally seal one capsule + SVG pair.

    Args:
        capsule: the proof capsule
        svg_text: the artifact (any embedded proof block is ignored for hashing)
        engine: signs the bundle hash; without one the bundle is sealed unsigned
        zk_prover: produces ZK inputs from (capsuleHash, svgHash); optional
        rp_id: relying party recorded in the attestation

    Example:
        session = SealSession(capsule, svg, engine=KasEngine(SoftwareSigner()))
        sealed = await session.seal()
    """

    def __init__(
        self,
        capsule: CapsuleLike,
        svg_text: str,
        engine: Optional[KasEngine] = None,
        zk_prover: Optional[ZkProver] = None,
        rp_id: Optional[str] = None,
    ):
        self.capsule = capsule_dict(capsule)
        self.svg_text = svg_text
        self.engine = engine
        self.zk_prover = zk_prover
        self.rp_id = rp_id or (engine.rp_id if engine is not None else None)
        self.generation = 0
        self._tasks: Dict[str, "asyncio.Future[Any]"] = {}

    # -- stage machinery ---------------------------------------------------

    async def _stage(self, name: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._tasks.get(name)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[name] = task
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._tasks.get(name) is not task:
                raise StageSuperseded(f"{name} was superseded by newer input", reason="superseded") from None
            raise
        except KaiproofError as ex:
            if ex.retryable and self._tasks.get(name) is task:
                del self._tasks[name]
            raise
        if self._tasks.get(name) is not task:
            raise StageSuperseded(f"{name} finished after its input changed", reason="superseded")
        return result

    def update(self, capsule: Optional[CapsuleLike] = None, svg_text: Optional[str] = None) -> int:
        """Replace inputs and cancel every stage that depended on them.

        Returns the new generation number.
        """

        invalidated = set()
        if capsule is not None:
            self.capsule = capsule_dict(capsule)
            invalidated.update(_DEPENDENTS["capsule"])
        if svg_text is not None:
            self.svg_text = svg_text
            invalidated.update(_DEPENDENTS["svg_text"])
        if not invalidated:
            return self.generation

        self.generation += 1
        for name in STAGES:
            if name in invalidated:
                task = self._tasks.pop(name, None)
                if task is not None and not task.done():
                    task.cancel()
        log.debug("seal session inputs changed", operation="update", generation=self.generation, invalidated=sorted(invalidated))
        return self.generation

    def close(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()

    def status(self) -> Dict[str, str]:
        out = {}
        for name in STAGES:
            task = self._tasks.get(name)
            if task is None:
                out[name] = "pending"
            elif not task.done():
                out[name] = "running"
            elif task.cancelled():
                out[name] = "cancelled"
            elif task.exception() is not None:
                out[name] = "failed"
            else:
                out[name] = "done"
        return out

    # -- stages ------------------------------------------------------------

    async def capsule_hash(self) -> str:
        capsule = self.capsule

        async def compute() -> str:
            return hash_proof_capsule(capsule)

        return await self._stage("capsule_hash", compute)

    async def svg_hash(self) -> str:
        svg_text = self.svg_text

        async def compute() -> str:
            return hash_svg_text(svg_text)

        return await self._stage("svg_hash", compute)

    async def zk_inputs(self) -> ZkInputs:
        async def compute() -> ZkInputs:
            if self.zk_prover is None:
                return ZkInputs()
            capsule_hash, svg_hash = await asyncio.gather(self.capsule_hash(), self.svg_hash())
            return await self.zk_prover(capsule_hash, svg_hash)

        return await self._stage("zk", compute)

    async def bundle_root(self) -> Dict[str, Any]:
        capsule = self.capsule

        async def compute() -> Dict[str, Any]:
            capsule_hash, svg_hash, zk = await asyncio.gather(
                self.capsule_hash(), self.svg_hash(), self.zk_inputs()
            )
            return build_bundle_root(capsule, svg_hash, zk=zk, capsule_hash=capsule_hash)

        return await self._stage("bundle_root", compute)

    async def bundle_hash(self) -> str:
        return compute_bundle_hash(await self.bundle_root())

    async def author_sig(self) -> Optional[Dict[str, Any]]:
        identity_key = self.capsule["identityKey"]

        async def compute() -> Optional[Dict[str, Any]]:
            bundle_hash = await self.bundle_hash()
            if self.engine is None:
                return None
            return await self.engine.sign_bundle_hash(identity_key, bundle_hash)

        return await self._stage("author_sig", compute)

    async def seal(self) -> SealedArtifact:
        """Run every stage and return the sealed bundle, embedded SVG and attestation."""

        svg_text = self.svg_text

        async def compute() -> SealedArtifact:
            root = await self.bundle_root()
            author_sig = await self.author_sig()
            bundle = seal_bundle(root, author_sig=author_sig)
            attestation = None
            attestable = self.engine is not None and self.engine.scheme is ChallengeScheme.BUNDLE_HASH
            if author_sig is not None and self.rp_id and attestable:
                attestation = attestation_from_bundle(bundle, self.rp_id)
            log.info("sealed artifact", operation="seal", bundle_hash=bundle["bundleHash"], signed=author_sig is not None)
            return SealedArtifact(bundle, embed_proof_metadata(svg_text, bundle), attestation)

        return await self._stage("sealed", compute)


__all__ = ["STAGES", "SealSession", "SealedArtifact", "ZkProver"]
