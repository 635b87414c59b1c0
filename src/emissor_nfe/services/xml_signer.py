from __future__ import annotations

import base64

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree
from signxml.algorithms import (
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.signer import XMLSigner

from emissor_nfe.config import DSIG_NS, NFE_NS

C14N_ALGORITHM = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"


class NFeXMLSigner(XMLSigner):
    """XMLSigner accepting RSA-SHA1, which the NF-e 4.00 schema still mandates."""

    def check_deprecated_methods(self) -> None:
        pass


def _ds(tag: str) -> str:
    return f"{{{DSIG_NS}}}{tag}"


def _copy_children(src: etree._Element, dst: etree._Element) -> None:
    for child in src:
        el = etree.SubElement(dst, child.tag, attrib=dict(child.attrib))
        el.text = child.text
        _copy_children(child, el)


def _unprefix_signature(root: etree._Element, key_pem: bytes) -> etree._Element:
    """Move a ``ds:Signature`` into the default xmldsig namespace.

    SEFAZ rejects the ``ds:`` prefix. SignedInfo canonicalizes differently
    without it, so SignatureValue is recomputed; the reference digest covers
    only the signed element and stays valid.
    """
    sig = root.find(_ds("Signature"))
    if sig is None or sig.prefix is None:
        return root

    clean = etree.Element(_ds("Signature"), nsmap={None: DSIG_NS})  # type: ignore[dict-item]
    _copy_children(sig, clean)
    root.replace(sig, clean)

    signed_info = clean.find(_ds("SignedInfo"))
    signature_value = clean.find(_ds("SignatureValue"))
    if signed_info is None or signature_value is None:
        raise ValueError("Signature without SignedInfo/SignatureValue")

    c14n = etree.tostring(signed_info, method="c14n", exclusive=False, with_comments=False)
    key = serialization.load_pem_private_key(key_pem, password=None)
    raw = key.sign(c14n, padding.PKCS1v15(), hashes.SHA1())  # type: ignore[union-attr, call-arg, arg-type]
    signature_value.text = base64.b64encode(raw).decode()
    return root


def _sign(root: etree._Element, inner_tag: str, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    inner = root.find(f"{{{NFE_NS}}}{inner_tag}")
    if inner is None:
        inner = root.find(inner_tag)
    if inner is None:
        raise ValueError(f"{inner_tag} element not found in {etree.QName(root).localname}")

    ref_id = inner.get("Id")
    if not ref_id:
        raise ValueError(f"{inner_tag} is missing Id attribute")

    signer = NFeXMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA1,
        digest_algorithm=DigestAlgorithm.SHA1,
        c14n_algorithm=C14N_ALGORITHM,
    )

    signed = signer.sign(
        root,
        key=key_pem,
        cert=cert_pem.decode(),
        reference_uri=f"#{ref_id}",
    )
    return _unprefix_signature(signed, key_pem)


def sign_nfe(nfe: etree._Element, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    """Sign the <NFe> element with an enveloped RSA-SHA1 signature over infNFe.

    Uses inclusive C14N 1.0 as required by the NF-e 4.00 layout. Returns
    the signed NFe element; an unprefixed <Signature> is appended after infNFe.
    """
    return _sign(nfe, "infNFe", key_pem, cert_pem)


def sign_event(evento: etree._Element, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    """Sign an <evento> (cancellation, CC-e) over its infEvento."""
    return _sign(evento, "infEvento", key_pem, cert_pem)
